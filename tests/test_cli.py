"""End-to-end tests for the operator CLI against a SQLite store."""

import json
from unittest import mock

import pytest
from typer.testing import CliRunner

from rolekeeper.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def store(engine, session_factory):
    with mock.patch("rolekeeper.services.store.get_session_factory", return_value=session_factory), \
            mock.patch("rolekeeper.db.session.get_session_factory", return_value=session_factory), \
            mock.patch("rolekeeper.db.session.get_engine", return_value=engine):
        yield


@pytest.fixture
def seeded():
    result = runner.invoke(app, ["db", "seed"])
    assert result.exit_code == 0, result.output
    assert "6 new users" in result.output


def test_create_tables_is_idempotent():
    result = runner.invoke(app, ["db", "create-tables"])
    assert result.exit_code == 0
    assert "Tables created" in result.output


def test_seed_twice_adds_nothing(seeded):
    result = runner.invoke(app, ["db", "seed"])
    assert "0 new users" in result.output


def test_dry_run_migration(seeded):
    result = runner.invoke(app, ["migrate", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "[dry run] 6/6 processed: 5 migrated, 1 skipped, 0 failed" in result.output
    assert "Snapshot:" not in result.output
    assert "'guest' has no canonical mapping" in result.output


def test_migration_requires_confirmation(seeded):
    result = runner.invoke(app, ["migrate"], input="n\n")
    assert result.exit_code == 1
    listing = runner.invoke(app, ["snapshots"])
    assert "Pre-migration snapshot" not in listing.output


def test_migrate_then_roll_back(seeded):
    result = runner.invoke(app, ["migrate", "--yes"])
    assert result.exit_code == 0, result.output
    assert "5 migrated, 1 skipped, 0 failed" in result.output
    snapshot_id = next(
        line.split(": ", 1)[1].strip() for line in result.output.splitlines() if line.startswith("Snapshot:")
    )

    listing = runner.invoke(app, ["snapshots"])
    assert snapshot_id in listing.output
    assert "Pre-migration snapshot" in listing.output

    undo = runner.invoke(app, ["rollback-migration", snapshot_id, "--reason", "wrong mapping", "--yes"])
    assert undo.exit_code == 0, undo.output
    assert "✅" in undo.output
    assert "6 user(s) affected" in undo.output

    history = runner.invoke(app, ["history"])
    assert "migration" in history.output
    assert "reason=wrong mapping" in history.output


def test_status_reports_pending_migration(seeded, fetch):
    from sqlalchemy import select
    from rolekeeper.models.user import User

    user_id = fetch(lambda s: s.scalars(select(User.id).where(User.email == "carol.faculty@demo.edu")).one())
    result = runner.invoke(app, ["status", user_id])
    assert result.exit_code == 0, result.output
    assert '"needs_migration": true' in result.output
    assert '"teacher"' in result.output


def test_validate_unknown_user_fails():
    result = runner.invoke(app, ["validate", "--user", "nobody"])
    assert result.exit_code == 1
    assert "USER_NOT_FOUND" in result.output


def test_validate_system_writes_report(seeded, tmp_path):
    path = tmp_path / "report.json"
    runner.invoke(app, ["validate", "--report", str(path)])
    report = json.loads(path.read_text())
    assert report["total_users"] == 6
    assert "Health score:" in runner.invoke(app, ["validate"]).output


def test_manual_snapshot_for_selected_users(seeded):
    result = runner.invoke(app, ["snapshot", "--description", "before audit", "--users", "a, b,"])
    assert result.exit_code == 0, result.output
    assert "0 users, 0 assignments" in result.output


def test_rollback_of_unknown_assignment_exits_nonzero():
    result = runner.invoke(app, ["rollback", "assignment", "missing", "--reason", "typo", "--yes"])
    assert result.exit_code == 1
    assert "❌" in result.output
    assert "NotFoundError" in result.output


def test_empty_bulk_rollback_succeeds_with_warning():
    result = runner.invoke(app, ["rollback", "bulk", "import-9", "--reason", "cleanup", "--yes"])
    assert result.exit_code == 0, result.output
    assert "No assignments found for bulk operation: import-9" in result.output


def test_audit_trail_after_migration(seeded):
    runner.invoke(app, ["migrate", "--yes", "--no-snapshot"])
    result = runner.invoke(app, ["audit", "--page-size", "2"])
    assert result.exit_code == 0, result.output
    assert "5 entries (page 1)" in result.output
    assert "bulk_migration" in result.output
