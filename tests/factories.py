"""Builders for unsaved ORM rows used across the test suite."""

import uuid
from datetime import timedelta

from rolekeeper.models.institution import Department, Institution
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.models.role_audit_log import RoleAuditLog
from rolekeeper.models.user import User
from rolekeeper.services.store import utcnow


def make_institution(name="Test University"):
    return Institution(id=str(uuid.uuid4()), name=name)


def make_department(institution, name="Mathematics"):
    return Department(id=str(uuid.uuid4()), institution_id=institution.id, name=name)


def make_user(institution=None, department=None, **kwargs):
    uid = kwargs.pop("id", None) or str(uuid.uuid4())
    return User(
        id=uid,
        email=kwargs.pop("email", f"{uid[:8]}@example.edu"),
        institution_id=institution.id if institution else kwargs.pop("institution_id", None),
        department_id=department.id if department else kwargs.pop("department_id", None),
        **kwargs,
    )


def make_assignment(user=None, role="teacher", **kwargs):
    assigned_at = kwargs.pop("assigned_at", None) or utcnow() - timedelta(days=1)
    user_id = kwargs.pop("user_id", None) or user.id
    return RoleAssignment(
        id=kwargs.pop("id", None) or str(uuid.uuid4()),
        user_id=user_id,
        role=role,
        status=kwargs.pop("status", "active"),
        assigned_by=kwargs.pop("assigned_by", "admin"),
        assigned_at=assigned_at,
        institution_id=kwargs.pop("institution_id", user.institution_id if user else None),
        department_id=kwargs.pop("department_id", user.department_id if user else None),
        **kwargs,
    )


def make_audit(user, old_role, new_role, timestamp, actor="admin", reason="manual change"):
    return RoleAuditLog(
        id=str(uuid.uuid4()),
        user_id=user.id,
        old_role=old_role,
        new_role=new_role,
        timestamp=timestamp,
        actor=actor,
        reason=reason,
    )
