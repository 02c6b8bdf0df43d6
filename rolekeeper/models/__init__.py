"""Models package — import all models so metadata.create_all can discover them."""

from rolekeeper.models.institution import Institution, Department
from rolekeeper.models.user import User
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.models.role_audit_log import RoleAuditLog
from rolekeeper.models.rollback import RollbackSnapshot, RollbackOperation

__all__ = [
    "Institution", "Department", "User", "RoleAssignment",
    "RoleAuditLog", "RollbackSnapshot", "RollbackOperation",
]
