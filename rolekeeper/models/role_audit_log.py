"""Role audit log model — append-only."""

import uuid

from sqlalchemy import Column, String, DateTime, Index
from rolekeeper.db.base import Base


class RoleAuditLog(Base):
    """Immutable record of every role change.

    This table is APPEND-ONLY: no UPDATE or DELETE operations should ever
    be performed on it (enforced at application level). Ordering by
    ``timestamp`` is what single-assignment rollback uses to find the
    previous role. A NULL ``new_role`` records a removal.
    """
    __tablename__ = "role_audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False)
    old_role = Column(String(50), nullable=True)
    new_role = Column(String(50), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    actor = Column(String(100), nullable=True)
    reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_role_audit_log_user_ts", "user_id", "timestamp"),
    )

    def to_snapshot_row(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "old_role": self.old_role,
            "new_role": self.new_role,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "actor": self.actor,
            "reason": self.reason,
        }
