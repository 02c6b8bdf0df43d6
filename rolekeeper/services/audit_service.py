"""Audit service — append-only trail of every role change."""

from datetime import datetime
from typing import Optional

from rolekeeper.models.role_audit_log import RoleAuditLog
from rolekeeper.schemas.schemas import RoleAuditLogOut
from rolekeeper.services.store import RoleStore, StoreBackedService, utcnow


class RoleAuditService(StoreBackedService):
    """Records immutable role audit entries and serves them to operator tooling."""

    @staticmethod
    def record_role_change(
        store: RoleStore,
        user_id: str,
        old_role: Optional[str],
        new_role: Optional[str],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> RoleAuditLog:
        """Append a single audit row inside the caller's transaction.

        Args:
            new_role: ``None`` records a removal.
            timestamp: defaults to now; migration and restore paths pass the
                ``assigned_at`` of the row they write so the previous-role
                lookup (``timestamp < assigned_at``) skips their own entry.

        The caller commits the entry together with the change it describes.
        """
        entry = RoleAuditLog(
            user_id=user_id,
            old_role=old_role,
            new_role=new_role,
            actor=actor,
            reason=(reason or "")[:500] or None,
            timestamp=timestamp or utcnow(),
        )
        store.add(entry)
        return entry

    def query_logs(self, user_id: Optional[str] = None, page: int = 1, page_size: int = 50) -> dict:
        """Query audit logs newest-first with pagination."""
        page = max(1, page)
        page_size = max(1, min(page_size, 500))

        def _load(store: RoleStore):
            total, rows = store.query_audit_logs(user_id, page, page_size)
            return total, [RoleAuditLogOut.model_validate(row) for row in rows]

        total, logs = self.read(_load)
        return {
            "logs": logs,
            "total": total,
            "page": page,
            "page_size": page_size,
        }
