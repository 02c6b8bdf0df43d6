"""Enumerations shared by the role tables and result schemas."""

import enum


class RoleName(str, enum.Enum):
    """Canonical new-model roles."""
    student = "student"
    teacher = "teacher"
    department_admin = "department_admin"
    institution_admin = "institution_admin"
    system_admin = "system_admin"


class AssignmentStatus(str, enum.Enum):
    active = "active"
    expired = "expired"
    revoked = "revoked"


class RoleStatus(str, enum.Enum):
    """Status of a user's primary role."""
    active = "active"
    inactive = "inactive"


class MigrationMode(str, enum.Enum):
    strict = "strict"
    hybrid = "hybrid"
    permissive = "permissive"


class Severity(str, enum.Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


class RollbackOperationType(str, enum.Enum):
    role_assignment = "role_assignment"
    bulk_assignment = "bulk_assignment"
    migration = "migration"
    system_recovery = "system_recovery"


class RollbackActionType(str, enum.Enum):
    restore_assignment = "restore_assignment"
    remove_assignment = "remove_assignment"
    update_status = "update_status"
    restore_user_data = "restore_user_data"
