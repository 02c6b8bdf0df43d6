"""Rollback engine — snapshots and reversal of assignment, bulk and snapshot-wide changes.

Every mutating operation runs under the named rollback lock and inside a
single store transaction. Per-row failures are collected into the result
instead of raised; only snapshot creation is all-or-nothing and raises.
"""

import logging
import random
import string
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import (
    ConflictError,
    NotFoundError,
    ReferenceIntegrityError,
    RoleSystemError,
    RoleValidationError,
    SnapshotCreationError,
    TransactionError,
)
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.models.rollback import RollbackOperation, RollbackSnapshot
from rolekeeper.models.user import User
from rolekeeper.schemas.enums import (
    AssignmentStatus,
    RoleName,
    RoleStatus,
    RollbackActionType,
    RollbackOperationType,
    Severity,
)
from rolekeeper.schemas.schemas import (
    AssignmentMetadata,
    RollbackAction,
    RollbackError,
    RollbackOperationOut,
    RollbackResult,
    SnapshotInfo,
)
from rolekeeper.services.audit_service import RoleAuditService
from rolekeeper.services.compatibility_service import map_legacy_role
from rolekeeper.services.locks import AdvisoryLock
from rolekeeper.services.store import RoleStore, StoreBackedService, utcnow

logger = logging.getLogger("rolekeeper.rollback")

SYSTEM_USER = "SYSTEM"
ROLLBACK_ACTOR = "system:rollback"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _id_suffix() -> str:
    return f"{int(time.time() * 1000)}_{''.join(random.choices(_ID_ALPHABET, k=9))}"


def new_snapshot_id() -> str:
    return f"snapshot_{_id_suffix()}"


def new_operation_id(prefix: str = "rollback") -> str:
    return f"{prefix}_{_id_suffix()}"


def _user_row(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "primary_role": user.primary_role,
        "role_status": user.role_status,
        "institution_id": user.institution_id,
        "department_id": user.department_id,
    }


def _canonical_role(value: Optional[str]) -> Optional[str]:
    """Audit rows may carry legacy strings; restore only canonical roles."""
    if not value:
        return None
    if value in {r.value for r in RoleName}:
        return value
    mapped = map_legacy_role(value)
    return mapped.value if mapped else None


class RoleRollbackService(StoreBackedService):
    """Captures restoration points and undoes role changes."""

    def __init__(
        self,
        session_factory=None,
        timeout_seconds: Optional[float] = None,
        lock: Optional[AdvisoryLock] = None,
        audit_window_minutes: Optional[int] = None,
    ):
        super().__init__(session_factory, timeout_seconds)
        self._lock = lock
        self.audit_window = timedelta(
            minutes=settings.SNAPSHOT_AUDIT_WINDOW_MINUTES if audit_window_minutes is None else audit_window_minutes
        )

    @property
    def lock(self) -> AdvisoryLock:
        if self._lock is None:
            self._lock = AdvisoryLock(
                settings.ROLLBACK_LOCK_NAME,
                self.session_factory,
                settings.ROLLBACK_LOCK_TIMEOUT_SECONDS,
            )
        return self._lock

    # ---- Snapshots ----

    def create_rollback_snapshot(
        self,
        description: str,
        user_ids: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SnapshotInfo:
        """Capture users, their assignments and recent audit rows into one immutable record.

        Raises:
            SnapshotCreationError: nothing was stored.
        """
        snapshot_id = new_snapshot_id()
        now = utcnow()

        with self.open_store() as store:
            try:
                users = store.get_users(user_ids)
                captured = {u.id for u in users}
                assignments = [a for a in store.list_assignments_for_users(user_ids) if a.user_id in captured]
                audit_logs = store.audit_logs_since(now - self.audit_window, user_ids)

                snapshot_metadata = dict(metadata or {})
                snapshot_metadata.update({
                    "created_by": "RoleRollbackService",
                    "user_ids": list(user_ids) if user_ids else "all",
                    "audit_window_minutes": int(self.audit_window.total_seconds() // 60),
                })
                snapshot = RollbackSnapshot(
                    id=snapshot_id,
                    description=description,
                    user_count=len(users),
                    assignment_count=len(assignments),
                    data={
                        "users": [_user_row(u) for u in users],
                        "assignments": [a.to_snapshot_row() for a in assignments],
                        "audit_logs": [log.to_snapshot_row() for log in audit_logs],
                    },
                    snapshot_metadata=snapshot_metadata,
                    created_at=now,
                )
                store.add(snapshot)
                store.commit()
            except RoleSystemError as e:
                store.rollback()
                logger.error("Snapshot %s failed: %s", snapshot_id, e)
                raise SnapshotCreationError(f"Failed to create rollback snapshot: {e}") from e

        logger.info(
            "Created snapshot %s (%d users, %d assignments)", snapshot_id, len(users), len(assignments)
        )
        return SnapshotInfo(
            id=snapshot_id,
            timestamp=now,
            description=description,
            user_count=len(users),
            assignment_count=len(assignments),
            metadata=snapshot_metadata,
        )

    def rollback_to_snapshot(
        self,
        snapshot_id: str,
        reason: str,
        operation_type: RollbackOperationType = RollbackOperationType.system_recovery,
        actor: Optional[str] = None,
    ) -> RollbackResult:
        """Replace the snapshot users' assignments and primary roles with the captured state."""
        operation_id = new_operation_id()
        metadata = {"snapshot_id": snapshot_id}
        try:
            self.lock.acquire()
        except TransactionError as e:
            return self._failed(operation_id, "rollback_to_snapshot", e, metadata)
        try:
            # a restore may touch many rows; driver-level statement timeouts still apply
            with RoleStore(self.session_factory(), None) as store:
                return self._restore_snapshot(store, snapshot_id, reason, operation_type, actor, operation_id)
        finally:
            self.lock.release()

    def _restore_snapshot(
        self,
        store: RoleStore,
        snapshot_id: str,
        reason: str,
        operation_type: RollbackOperationType,
        actor: Optional[str],
        operation_id: str,
    ) -> RollbackResult:
        metadata: Dict[str, Any] = {"snapshot_id": snapshot_id}
        try:
            snapshot = store.get_snapshot(snapshot_id)
            if snapshot is None:
                raise NotFoundError(f"Snapshot not found: {snapshot_id}")
            data = snapshot.data or {}
            user_rows = data.get("users", [])
            assignment_rows = data.get("assignments", [])
            affected = [row["id"] for row in user_rows]
            store.delete_assignments_for_users(affected)
        except RoleSystemError as e:
            store.rollback()
            return self._failed(operation_id, "rollback_to_snapshot", e, metadata)

        now = utcnow()
        actions: List[RollbackAction] = []
        errors: List[RollbackError] = []
        audit_reason = f"Snapshot restore {snapshot_id}: {reason}"

        for row in assignment_rows:
            action = self._restore_assignment(store, row, operation_id, now)
            actions.append(action)
            if not action.success:
                errors.append(RollbackError(
                    user_id=row.get("user_id", SYSTEM_USER),
                    action=RollbackActionType.restore_assignment.value,
                    error=action.error or "Failed to restore assignment",
                    severity=Severity.high,
                ))

        for row in user_rows:
            action = self._restore_user(store, row, actor, audit_reason, now)
            actions.append(action)
            if not action.success:
                errors.append(RollbackError(
                    user_id=row["id"],
                    action=RollbackActionType.restore_user_data.value,
                    error=action.error or "Failed to restore user data",
                    severity=Severity.high,
                ))

        metadata.update({
            "restored_users": len(user_rows),
            "restored_assignments": sum(
                1 for a in actions if a.type == RollbackActionType.restore_assignment and a.success
            ),
            "operation_type": RollbackOperationType(operation_type).value,
        })
        try:
            store.add(RollbackOperation(
                id=operation_id,
                type=RollbackOperationType(operation_type).value,
                timestamp=now,
                affected_users=affected,
                original_state={"snapshot_id": snapshot_id},
                rollback_state={"restored": True, "error_count": len(errors)},
                reason=reason,
                operation_metadata=metadata,
            ))
            store.commit()
        except RoleSystemError as e:
            store.rollback()
            return self._failed(
                operation_id,
                "rollback_to_snapshot",
                TransactionError(f"Failed to commit rollback transaction: {e}"),
                metadata,
            )

        logger.info(
            "Restored snapshot %s for %d users (%d errors) as %s", snapshot_id, len(affected), len(errors), operation_id
        )
        return RollbackResult(
            success=not errors,
            operation_id=operation_id,
            affected_users=len(affected),
            rollback_actions=actions,
            errors=errors,
            metadata=metadata,
        )

    @staticmethod
    def _restore_assignment(store: RoleStore, row: Dict[str, Any], operation_id: str, now) -> RollbackAction:
        details = {"assignment_id": row.get("id"), "role": row.get("role"), "status": row.get("status")}
        try:
            if row.get("role") not in {r.value for r in RoleName}:
                raise RoleValidationError(f"Snapshot row has invalid role {row.get('role')!r}", code="INVALID_ROLE")
            if not row.get("user_id") or store.get_user(row["user_id"]) is None:
                raise ReferenceIntegrityError(f"Snapshot row references missing user {row.get('user_id')}")
            assignment = RoleAssignment.from_snapshot_row(row)
            meta = assignment.meta
            meta.restored_by = operation_id
            meta.restored_at = now.isoformat()
            assignment.meta = meta
            with store.savepoint():
                store.add(assignment)
        except (RoleSystemError, KeyError, ValueError) as e:
            return RollbackAction(
                type=RollbackActionType.restore_assignment,
                user_id=row.get("user_id", SYSTEM_USER),
                details=details,
                success=False,
                error=str(e),
            )
        return RollbackAction(
            type=RollbackActionType.restore_assignment,
            user_id=assignment.user_id,
            details=details,
            success=True,
        )

    @staticmethod
    def _restore_user(store: RoleStore, row: Dict[str, Any], actor: Optional[str], reason: str, now) -> RollbackAction:
        details = {"primary_role": row.get("primary_role"), "role_status": row.get("role_status")}
        try:
            with store.savepoint():
                user = store.get_user(row["id"])
                if user is None:
                    raise NotFoundError(f"User not found: {row['id']}")
                previous = user.primary_role
                store.update_user_role(user, row.get("primary_role"), row.get("role_status"))
                if previous != row.get("primary_role"):
                    RoleAuditService.record_role_change(
                        store,
                        user_id=user.id,
                        old_role=previous,
                        new_role=row.get("primary_role"),
                        actor=actor or ROLLBACK_ACTOR,
                        reason=reason,
                        timestamp=now,
                    )
        except RoleSystemError as e:
            return RollbackAction(
                type=RollbackActionType.restore_user_data,
                user_id=row["id"],
                details={},
                success=False,
                error=str(e),
            )
        return RollbackAction(
            type=RollbackActionType.restore_user_data,
            user_id=row["id"],
            details=details,
            success=True,
        )

    # ---- Single assignment ----

    def rollback_role_assignment(
        self,
        assignment_id: str,
        reason: str,
        actor: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RollbackResult:
        """Remove an assignment and restore the role the audit log says came before it."""
        operation_id = new_operation_id("rollback_assignment")
        metadata = {"assignment_id": assignment_id}
        try:
            self.lock.acquire()
        except TransactionError as e:
            return self._failed(operation_id, "rollback_role_assignment", e, metadata, user_id=user_id or "UNKNOWN")
        try:
            with self.open_store() as store:
                return self._rollback_assignment(store, assignment_id, reason, actor, user_id, operation_id)
        finally:
            self.lock.release()

    def _rollback_assignment(
        self,
        store: RoleStore,
        assignment_id: str,
        reason: str,
        actor: Optional[str],
        user_id: Optional[str],
        operation_id: str,
    ) -> RollbackResult:
        metadata: Dict[str, Any] = {"assignment_id": assignment_id}
        try:
            assignment = store.get_assignment(assignment_id)
            if assignment is None:
                raise NotFoundError(f"Assignment not found: {assignment_id}")
            previous = store.latest_audit_before(assignment.user_id, assignment.assigned_at)
        except RoleSystemError as e:
            store.rollback()
            return self._failed(operation_id, "rollback_role_assignment", e, metadata, user_id=user_id or "UNKNOWN")

        target_user = assignment.user_id
        original = assignment.to_snapshot_row()
        previous_state = previous.to_snapshot_row() if previous else None
        previous_role = previous.old_role if previous else None
        audit_reason = f"Rollback {operation_id}: {reason}"
        now = utcnow()

        actions: List[RollbackAction] = []
        errors: List[RollbackError] = []
        warnings: List[str] = []

        try:
            with store.savepoint():
                store.delete_assignment(assignment)
                RoleAuditService.record_role_change(
                    store,
                    user_id=target_user,
                    old_role=original["role"],
                    new_role=None,
                    actor=actor or ROLLBACK_ACTOR,
                    reason=audit_reason,
                    timestamp=now,
                )
            actions.append(RollbackAction(
                type=RollbackActionType.remove_assignment,
                user_id=target_user,
                details={"assignment_id": assignment_id, "role": original["role"]},
                success=True,
            ))
        except RoleSystemError as e:
            actions.append(RollbackAction(
                type=RollbackActionType.remove_assignment,
                user_id=target_user,
                details={"assignment_id": assignment_id, "role": original["role"]},
                success=False,
                error=str(e),
            ))
            errors.append(RollbackError(
                user_id=target_user,
                action=RollbackActionType.remove_assignment.value,
                error=str(e),
                severity=Severity.high,
            ))

        restored_role = _canonical_role(previous_role)
        if restored_role:
            action = self._restore_previous_role(store, original, restored_role, actor, audit_reason, operation_id, now)
            actions.append(action)
            if not action.success:
                errors.append(RollbackError(
                    user_id=target_user,
                    action="restore_previous_role",
                    error=action.error or "Failed to restore previous role",
                    severity=Severity.medium,
                ))
        elif previous_role:
            warnings.append(f"Previous role {previous_role!r} for user {target_user} is not a known role; not restored")
        else:
            warnings.append(f"No previous role found for user {target_user}")

        metadata.update({
            "user_id": target_user,
            "rolled_back_role": original["role"],
            "restored_role": restored_role,
        })
        try:
            store.add(RollbackOperation(
                id=operation_id,
                type=RollbackOperationType.role_assignment.value,
                timestamp=now,
                user_id=target_user,
                affected_users=[target_user],
                original_state={"assignment": original},
                rollback_state={"previous_role": restored_role},
                reason=reason,
                operation_metadata={"assignment_id": assignment_id, "previous_state": previous_state},
            ))
            store.commit()
        except RoleSystemError as e:
            store.rollback()
            return self._failed(
                operation_id,
                "rollback_role_assignment",
                TransactionError(f"Failed to commit rollback transaction: {e}"),
                metadata,
                user_id=target_user,
            )

        logger.info("Rolled back assignment %s for user %s as %s", assignment_id, target_user, operation_id)
        return RollbackResult(
            success=not errors,
            operation_id=operation_id,
            affected_users=1,
            rollback_actions=actions,
            errors=errors,
            warnings=warnings,
            metadata=metadata,
        )

    @staticmethod
    def _restore_previous_role(
        store: RoleStore,
        original: Dict[str, Any],
        role: str,
        actor: Optional[str],
        reason: str,
        operation_id: str,
        now,
    ) -> RollbackAction:
        user_id = original["user_id"]
        details: Dict[str, Any] = {"role": role, "institution_id": original.get("institution_id")}
        restored = RoleAssignment(
            user_id=user_id,
            role=role,
            status=AssignmentStatus.active.value,
            assigned_by=actor or ROLLBACK_ACTOR,
            assigned_at=now,
            is_temporary=False,
            institution_id=original.get("institution_id"),
            department_id=original.get("department_id"),
        )
        restored.meta = AssignmentMetadata(
            rollback_operation=True, restored_by=operation_id, restored_at=now.isoformat()
        )
        try:
            try:
                store.insert_guarded(restored)
                details["assignment_id"] = restored.id
                details["created"] = True
            except ConflictError:
                # an active assignment for this role already exists
                details["created"] = False
            with store.savepoint():
                user = store.get_user(user_id)
                if user is not None and (user.primary_role != role or user.role_status != RoleStatus.active.value):
                    previous = user.primary_role
                    store.update_user_role(user, role, RoleStatus.active.value)
                    if previous != role:
                        RoleAuditService.record_role_change(
                            store,
                            user_id=user_id,
                            old_role=previous,
                            new_role=role,
                            actor=actor or ROLLBACK_ACTOR,
                            reason=reason,
                            timestamp=now,
                        )
        except RoleSystemError as e:
            return RollbackAction(
                type=RollbackActionType.restore_assignment,
                user_id=user_id,
                details=details,
                success=False,
                error=str(e),
            )
        return RollbackAction(
            type=RollbackActionType.restore_assignment,
            user_id=user_id,
            details=details,
            success=True,
        )

    # ---- Bulk ----

    def rollback_bulk_assignment(self, bulk_operation_id: str, reason: str, actor: Optional[str] = None) -> RollbackResult:
        """Roll back every assignment tagged with ``bulk_operation_id``, whatever its status."""
        operation_id = new_operation_id("rollback_bulk")
        metadata: Dict[str, Any] = {"bulk_operation_id": bulk_operation_id}
        try:
            self.lock.acquire()
        except TransactionError as e:
            return self._failed(operation_id, "rollback_bulk_assignment", e, metadata)
        try:
            try:
                targets = self.read(
                    lambda store: [(a.id, a.user_id) for a in store.assignments_by_bulk_operation(bulk_operation_id)]
                )
            except RoleSystemError as e:
                return self._failed(operation_id, "rollback_bulk_assignment", e, metadata)

            if not targets:
                return RollbackResult(
                    success=True,
                    operation_id=operation_id,
                    affected_users=0,
                    warnings=[f"No assignments found for bulk operation: {bulk_operation_id}"],
                    metadata=metadata,
                )

            actions: List[RollbackAction] = []
            errors: List[RollbackError] = []
            warnings: List[str] = []
            for assignment_id, user_id in targets:
                result = self.rollback_role_assignment(
                    assignment_id, f"Bulk rollback: {reason}", actor=actor, user_id=user_id
                )
                actions.extend(result.rollback_actions)
                errors.extend(result.errors)
                warnings.extend(result.warnings)

            affected = list(dict.fromkeys(user_id for _, user_id in targets))
            metadata.update({
                "rolled_back_assignments": len(targets),
                "affected_users": len(affected),
            })
            try:
                with self.open_store() as store:
                    store.add(RollbackOperation(
                        id=operation_id,
                        type=RollbackOperationType.bulk_assignment.value,
                        timestamp=utcnow(),
                        affected_users=affected,
                        original_state={"bulk_operation_id": bulk_operation_id, "assignment_count": len(targets)},
                        rollback_state={"rolled_back": True, "error_count": len(errors)},
                        reason=reason,
                        operation_metadata=metadata,
                    ))
                    store.commit()
            except RoleSystemError as e:
                errors.append(RollbackError(
                    user_id=SYSTEM_USER,
                    action="log_bulk_rollback",
                    error=f"TransactionError: Failed to record bulk rollback operation: {e}",
                    severity=Severity.critical,
                ))

            logger.info(
                "Rolled back bulk operation %s: %d assignments, %d users, %d errors",
                bulk_operation_id, len(targets), len(affected), len(errors),
            )
            return RollbackResult(
                success=not errors,
                operation_id=operation_id,
                affected_users=len(affected),
                rollback_actions=actions,
                errors=errors,
                warnings=warnings,
                metadata=metadata,
            )
        finally:
            self.lock.release()

    # ---- Listings ----

    def get_available_snapshots(self, limit: int = 20) -> List[SnapshotInfo]:
        rows = self.read(lambda store: store.list_snapshots(limit))
        return [
            SnapshotInfo(
                id=row.id,
                timestamp=row.created_at,
                description=row.description,
                user_count=row.user_count,
                assignment_count=row.assignment_count,
                metadata=row.snapshot_metadata or {},
            )
            for row in rows
        ]

    def get_rollback_history(self, limit: int = 50) -> List[RollbackOperationOut]:
        rows = self.read(lambda store: store.list_operations(limit))
        return [
            RollbackOperationOut(
                id=row.id,
                type=row.type,
                timestamp=row.timestamp,
                user_id=row.user_id,
                affected_users=row.affected_users or [],
                original_state=row.original_state or {},
                rollback_state=row.rollback_state or {},
                reason=row.reason,
                metadata=row.operation_metadata or {},
            )
            for row in rows
        ]

    @staticmethod
    def _failed(
        operation_id: str,
        action: str,
        error: Exception,
        metadata: Dict[str, Any],
        user_id: str = SYSTEM_USER,
    ) -> RollbackResult:
        logger.error("Rollback %s (%s) failed: %s", operation_id, action, error)
        return RollbackResult(
            success=False,
            operation_id=operation_id,
            affected_users=0,
            errors=[RollbackError(
                user_id=user_id,
                action=action,
                error=f"{type(error).__name__}: {error}",
                severity=Severity.critical,
            )],
            metadata=metadata,
        )
