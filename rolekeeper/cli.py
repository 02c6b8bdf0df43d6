"""Role migration operator CLI (rolekeeper)."""

import json
import logging
from typing import Optional

import typer

from rolekeeper.core.config import settings

app = typer.Typer(name="rolekeeper", help="Role migration, validation and rollback tooling")
db_app = typer.Typer(help="Database management commands")
rollback_app = typer.Typer(help="Undo role changes")
app.add_typer(db_app, name="db")
app.add_typer(rollback_app, name="rollback")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if (verbose or settings.DEBUG) else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _echo_rollback(result) -> None:
    icon = "✅" if result.success else "❌"
    typer.echo(f"{icon} Operation {result.operation_id}: {result.affected_users} user(s) affected")
    for action in result.rollback_actions:
        mark = "ok" if action.success else f"FAILED ({action.error})"
        typer.echo(f"  - {action.type.value} {action.user_id}: {mark}")
    for warning in result.warnings:
        typer.echo(f"  ⚠️  {warning}")
    for error in result.errors:
        typer.echo(f"  [{error.severity.value}] {error.user_id} {error.action}: {error.error}")
    if not result.success:
        raise typer.Exit(code=1)


# ---- Database ----

@db_app.command("create-tables")
def db_create_tables():
    """Create all role tables in the configured database."""
    import rolekeeper.models  # noqa: F401  registers tables
    from rolekeeper.db.base import Base
    from rolekeeper.db.session import get_engine

    Base.metadata.create_all(get_engine())
    typer.echo("✅ Tables created (or already exist)")


@db_app.command("seed")
def db_seed():
    """Seed a demo institution and legacy-role users."""
    from rolekeeper.db.session import get_session_factory
    from rolekeeper.db.seeds.seed_sample_data import seed_sample_data

    db = get_session_factory()()
    try:
        seed_sample_data(db)
    finally:
        db.close()


# ---- Migration ----

@app.command("migrate")
def migrate(
    batch_size: int = typer.Option(settings.MIGRATION_BATCH_SIZE, help="Users per batch"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be migrated"),
    snapshot: bool = typer.Option(True, "--snapshot/--no-snapshot", help="Take a pre-migration snapshot"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Migrate every legacy-only user to role assignments."""
    from rolekeeper.services.migration_service import RoleMigrationService

    if not dry_run and not yes:
        typer.confirm("This will write role assignments for every legacy-only user. Continue?", abort=True)

    report = RoleMigrationService().migrate(batch_size=batch_size, dry_run=dry_run, create_snapshot=snapshot)
    prefix = "[dry run] " if dry_run else ""
    typer.echo(
        f"{prefix}{report.processed_users}/{report.total_users} processed: "
        f"{report.migrated_users} migrated, {report.skipped_users} skipped, {report.failed_users} failed"
    )
    if report.snapshot_id:
        typer.echo(f"Snapshot: {report.snapshot_id}")
    for warning in report.warnings:
        typer.echo(f"  ⚠️  {warning['user_id']}: {warning['message']}")
    for error in report.errors:
        typer.echo(f"  ❌ {error['user_id']}: {error['error']}")
    if report.failed_users:
        raise typer.Exit(code=1)


@app.command("rollback-migration")
def rollback_migration(
    snapshot_id: str = typer.Argument(..., help="Pre-migration snapshot id"),
    reason: str = typer.Option(..., help="Why the migration is being undone"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Restore the state captured before a migration run."""
    from rolekeeper.services.migration_service import RoleMigrationService

    if not yes:
        typer.confirm(f"Restore snapshot {snapshot_id}? Current assignments of its users will be replaced.", abort=True)
    _echo_rollback(RoleMigrationService().rollback_migration(snapshot_id, reason))


# ---- Inspection ----

@app.command("status")
def status(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's compatibility status and resolved roles."""
    from rolekeeper.services.compatibility_service import RoleCompatibilityService

    resolver = RoleCompatibilityService()
    info = resolver.get_compatibility_status(user_id)
    roles = resolver.get_user_roles(user_id)
    typer.echo(json.dumps(
        {**info.model_dump(), "roles": [r.value for r in roles]},
        indent=2,
    ))


@app.command("validate")
def validate(
    user: Optional[str] = typer.Option(None, "--user", help="Validate a single user"),
    report: Optional[str] = typer.Option(None, "--report", help="Write the JSON report to this file"),
):
    """Validate one user or the whole system."""
    from rolekeeper.services.validation_service import RoleValidationService

    service = RoleValidationService()
    if user:
        result = service.validate_user_roles(user)
        payload = result.model_dump(mode="json")
        failed = not result.is_valid
        typer.echo(f"{'✅' if result.is_valid else '❌'} {user}: {len(result.errors)} errors, {len(result.warnings)} warnings")
        for error in result.errors:
            typer.echo(f"  [{error.severity.value}] {error.code}: {error.message}")
        for warning in result.warnings:
            typer.echo(f"  [warning] {warning.code}: {warning.message}")
    else:
        system = service.validate_system()
        payload = system.model_dump(mode="json")
        summary = system.summary
        failed = summary.critical_issues > 0
        typer.echo(
            f"Users: {system.total_users} ({system.valid_users} valid, {system.invalid_users} invalid)\n"
            f"Issues: {summary.total_issues} (critical {summary.critical_issues}, high {summary.high_priority_issues}, "
            f"medium {summary.medium_priority_issues}, low {summary.low_priority_issues})\n"
            f"Health score: {summary.health_score}{' (incomplete)' if summary.incomplete else ''}"
        )

    if report:
        with open(report, "w") as f:
            json.dump(payload, f, indent=2)
        typer.echo(f"Report written to {report}")
    if failed:
        raise typer.Exit(code=1)


# ---- Snapshots & history ----

@app.command("snapshot")
def snapshot(
    description: str = typer.Option("Manual snapshot", help="Snapshot description"),
    users: Optional[str] = typer.Option(None, help="Comma-separated user ids (default: all)"),
):
    """Capture a restoration point."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    user_ids = [u.strip() for u in users.split(",") if u.strip()] if users else None
    info = RoleRollbackService().create_rollback_snapshot(description, user_ids=user_ids)
    typer.echo(f"✅ Snapshot {info.id}: {info.user_count} users, {info.assignment_count} assignments")


@app.command("snapshots")
def snapshots(limit: int = typer.Option(20, help="Max rows")):
    """List snapshots, newest first."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    for s in RoleRollbackService().get_available_snapshots(limit):
        typer.echo(f"  [{s.id}] {s.timestamp:%Y-%m-%d %H:%M:%S} {s.description} ({s.user_count} users, {s.assignment_count} assignments)")


@app.command("history")
def history(limit: int = typer.Option(50, help="Max rows")):
    """List rollback operations, newest first."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    for op in RoleRollbackService().get_rollback_history(limit):
        typer.echo(f"  [{op.id}] {op.timestamp:%Y-%m-%d %H:%M:%S} {op.type.value} users={len(op.affected_users)} reason={op.reason}")


@app.command("audit")
def audit(
    user: Optional[str] = typer.Option(None, "--user", help="Only this user's changes"),
    page: int = typer.Option(1, help="Page number"),
    page_size: int = typer.Option(50, help="Rows per page"),
):
    """Show the role change audit trail, newest first."""
    from rolekeeper.services.audit_service import RoleAuditService

    result = RoleAuditService().query_logs(user_id=user, page=page, page_size=page_size)
    typer.echo(f"{result['total']} entries (page {result['page']})")
    for log in result["logs"]:
        typer.echo(
            f"  {log.timestamp:%Y-%m-%d %H:%M:%S} {log.user_id} {log.old_role or '-'} -> {log.new_role or '-'} "
            f"by {log.actor or '-'}: {log.reason or ''}"
        )


# ---- Rollback ----

@rollback_app.command("snapshot")
def rollback_snapshot(
    snapshot_id: str = typer.Argument(..., help="Snapshot id"),
    reason: str = typer.Option(..., help="Why the rollback is needed"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Restore every user captured in a snapshot."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    if not yes:
        typer.confirm(f"Restore snapshot {snapshot_id}?", abort=True)
    _echo_rollback(RoleRollbackService().rollback_to_snapshot(snapshot_id, reason))


@rollback_app.command("assignment")
def rollback_assignment(
    assignment_id: str = typer.Argument(..., help="Assignment id"),
    reason: str = typer.Option(..., help="Why the rollback is needed"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Remove one assignment and restore the previous role."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    if not yes:
        typer.confirm(f"Roll back assignment {assignment_id}?", abort=True)
    _echo_rollback(RoleRollbackService().rollback_role_assignment(assignment_id, reason))


@rollback_app.command("bulk")
def rollback_bulk(
    bulk_operation_id: str = typer.Argument(..., help="Bulk operation id"),
    reason: str = typer.Option(..., help="Why the rollback is needed"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Roll back every assignment created by a bulk operation."""
    from rolekeeper.services.rollback_service import RoleRollbackService

    if not yes:
        typer.confirm(f"Roll back bulk operation {bulk_operation_id}?", abort=True)
    _echo_rollback(RoleRollbackService().rollback_bulk_assignment(bulk_operation_id, reason))


if __name__ == "__main__":
    app()
