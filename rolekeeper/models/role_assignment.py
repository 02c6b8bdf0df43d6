"""RoleAssignment model — one row per granted role."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, Index, func
from rolekeeper.db.base import Base
from rolekeeper.schemas.enums import AssignmentStatus
from rolekeeper.schemas.schemas import AssignmentMetadata


def active_tuple_key(
    user_id: str, role: str, institution_id: Optional[str], department_id: Optional[str]
) -> str:
    """Deterministic key of the (user, role, institution, department) tuple."""
    return "|".join([user_id, role, institution_id or "", department_id or ""])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RoleAssignment(Base):
    """A role granted to a user within an institution (and optionally a department).

    ``guard_key`` is unique and only set by guarded writers while the row is
    active, so two racing migrations for the same tuple cannot both insert.
    Rows written by other tools leave it NULL and may still duplicate.
    """
    __tablename__ = "user_role_assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=AssignmentStatus.active.value)
    assigned_by = Column(String(36), nullable=True)
    assigned_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    is_temporary = Column(Boolean, default=False, nullable=False)
    institution_id = Column(String(36), nullable=True, index=True)
    department_id = Column(String(36), nullable=True)
    bulk_operation_id = Column(String(100), nullable=True, index=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    guard_key = Column(String(200), nullable=True, unique=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_role_assignments_user_status", "user_id", "status"),
    )

    @property
    def meta(self) -> AssignmentMetadata:
        data = dict(self.extra_metadata or {})
        data["bulk_operation_id"] = self.bulk_operation_id
        return AssignmentMetadata.model_validate(data)

    @meta.setter
    def meta(self, value: AssignmentMetadata) -> None:
        data = value.model_dump(mode="json", exclude_none=True)
        self.bulk_operation_id = data.pop("bulk_operation_id", None)
        self.extra_metadata = data

    @property
    def tuple_key(self) -> str:
        return active_tuple_key(self.user_id, self.role, self.institution_id, self.department_id)

    def guard(self) -> None:
        """Claim the active-tuple slot; only valid while the row is active."""
        if self.status == AssignmentStatus.active.value:
            self.guard_key = self.tuple_key

    def set_status(self, status: AssignmentStatus) -> None:
        self.status = status.value
        if status != AssignmentStatus.active:
            self.guard_key = None

    def to_snapshot_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "status": self.status,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "expires_at": _iso(self.expires_at),
            "is_temporary": bool(self.is_temporary),
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "bulk_operation_id": self.bulk_operation_id,
            "metadata": dict(self.extra_metadata or {}),
            "guard_key": self.guard_key,
        }

    @classmethod
    def from_snapshot_row(cls, row: Dict[str, Any]) -> "RoleAssignment":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            role=row["role"],
            status=row["status"],
            assigned_by=row.get("assigned_by"),
            assigned_at=_parse(row.get("assigned_at")),
            expires_at=_parse(row.get("expires_at")),
            is_temporary=bool(row.get("is_temporary")),
            institution_id=row.get("institution_id"),
            department_id=row.get("department_id"),
            bulk_operation_id=row.get("bulk_operation_id"),
            extra_metadata=dict(row.get("metadata") or {}),
            guard_key=row.get("guard_key"),
        )
