"""Bulk migration run — moves every legacy-only user onto the assignment model."""

import logging
from typing import List, Optional

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import ConfigurationError, OperationCancelledError, RoleSystemError
from rolekeeper.schemas.enums import RollbackOperationType
from rolekeeper.schemas.schemas import MigrationReport, RollbackResult
from rolekeeper.services.compatibility_service import (
    CompatibilityConfig,
    RoleCompatibilityService,
    map_legacy_role,
)
from rolekeeper.services.rollback_service import RoleRollbackService
from rolekeeper.services.store import StoreBackedService, utcnow

logger = logging.getLogger("rolekeeper.migration")


class RoleMigrationService(StoreBackedService):
    """Batch driver around the resolver's read-repair step."""

    def __init__(
        self,
        session_factory=None,
        timeout_seconds: Optional[float] = None,
        resolver: Optional[RoleCompatibilityService] = None,
        rollback: Optional[RoleRollbackService] = None,
    ):
        super().__init__(session_factory, timeout_seconds)
        self.resolver = resolver or RoleCompatibilityService(
            CompatibilityConfig.from_settings(), session_factory, timeout_seconds
        )
        self.rollback = rollback or RoleRollbackService(session_factory, timeout_seconds)

    def find_candidates(self) -> List[tuple]:
        """(user_id, legacy_role) for users with a legacy role and no active new-model role."""
        return self.read(lambda store: [(u.id, u.role) for u in store.list_legacy_only_users()])

    def migrate(
        self,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        create_snapshot: bool = True,
        actor: Optional[str] = None,
    ) -> MigrationReport:
        """Migrate all candidates in batches; failures are recorded per user."""
        batch_size = settings.MIGRATION_BATCH_SIZE if batch_size is None else batch_size
        if batch_size < 1:
            raise ConfigurationError(f"Batch size must be at least 1, got {batch_size}")
        if not self.resolver.config.legacy_support_enabled:
            raise ConfigurationError("Legacy support is disabled; nothing can be migrated")

        report = MigrationReport(dry_run=dry_run, started_at=utcnow())
        candidates = self.find_candidates()
        report.total_users = len(candidates)
        logger.info("Found %d users to migrate (dry_run=%s)", len(candidates), dry_run)

        if candidates and create_snapshot and not dry_run:
            snapshot = self.rollback.create_rollback_snapshot(
                "Pre-migration snapshot",
                user_ids=[user_id for user_id, _ in candidates],
                metadata={"purpose": "role_migration", "batch_size": batch_size},
            )
            report.snapshot_id = snapshot.id

        for start in range(0, len(candidates), batch_size):
            batch = candidates[start:start + batch_size]
            for user_id, legacy_role in batch:
                self._migrate_one(report, user_id, legacy_role, dry_run, actor)
            logger.info(
                "Batch %d: processed %d/%d users", start // batch_size + 1, report.processed_users, report.total_users
            )

        report.finished_at = utcnow()
        logger.info(
            "Migration finished: %d migrated, %d skipped, %d failed",
            report.migrated_users, report.skipped_users, report.failed_users,
        )
        return report

    def _migrate_one(self, report: MigrationReport, user_id: str, legacy_role: str, dry_run: bool, actor: Optional[str]) -> None:
        report.processed_users += 1
        mapped = map_legacy_role(legacy_role)
        if mapped is None:
            report.skipped_users += 1
            report.warnings.append({
                "user_id": user_id,
                "code": "UNMAPPABLE_ROLE",
                "message": f"Legacy role {legacy_role!r} has no canonical mapping",
            })
            return
        if dry_run:
            report.migrated_users += 1
            return

        try:
            outcome = self.resolver.ensure_migrated(user_id, actor=actor, reason="bulk_migration")
        except OperationCancelledError:
            raise
        except RoleSystemError as e:
            report.failed_users += 1
            report.errors.append({"user_id": user_id, "error": f"{type(e).__name__}: {e}"})
            logger.error("Migration of user %s failed: %s", user_id, e)
            return

        if outcome.did_migrate:
            report.migrated_users += 1
        else:
            report.skipped_users += 1

    def rollback_migration(self, snapshot_id: str, reason: str, actor: Optional[str] = None) -> RollbackResult:
        return self.rollback.rollback_to_snapshot(
            snapshot_id, reason, operation_type=RollbackOperationType.migration, actor=actor
        )
