"""Rollback snapshot and rollback operation models."""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index
from rolekeeper.db.base import Base


class RollbackSnapshot(Base):
    """Immutable by-value copy of users, assignments, and recent audit rows."""
    __tablename__ = "role_rollback_snapshots"

    id = Column(String(64), primary_key=True)
    description = Column(Text, nullable=False)
    user_count = Column(Integer, default=0, nullable=False)
    assignment_count = Column(Integer, default=0, nullable=False)
    data = Column(JSON, nullable=False)
    snapshot_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_rollback_snapshots_created_at", "created_at"),
    )


class RollbackOperation(Base):
    """Append-only audit of rollback actions themselves."""
    __tablename__ = "role_rollback_operations"

    id = Column(String(64), primary_key=True)
    type = Column(String(30), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    user_id = Column(String(36), nullable=True, index=True)
    affected_users = Column(JSON, nullable=False)
    original_state = Column(JSON, nullable=True)
    rollback_state = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    operation_metadata = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_rollback_operations_timestamp", "timestamp"),
    )
