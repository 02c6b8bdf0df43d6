"""Pydantic schemas for service results and candidate records."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from rolekeeper.schemas.enums import RollbackActionType, RollbackOperationType, Severity


# ---- Assignment metadata ----
class AssignmentMetadata(BaseModel):
    """Typed view of an assignment's metadata map.

    ``bulk_operation_id`` is the join key for bulk rollback; any other keys
    written by outside tools are preserved as extras.
    """
    bulk_operation_id: Optional[str] = None
    migrated_on_the_fly: Optional[bool] = None
    legacy_role: Optional[str] = None
    restored_by: Optional[str] = None
    restored_at: Optional[str] = None
    rollback_operation: Optional[bool] = None

    model_config = {"extra": "allow"}


class AssignmentCandidate(BaseModel):
    """A role assignment record submitted for structural validation.

    Fields are deliberately loose so that malformed candidates can be
    reported instead of rejected at parse time.
    """
    id: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_temporary: bool = False
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    metadata: AssignmentMetadata = Field(default_factory=AssignmentMetadata)


# ---- Compatibility ----
class CompatibilityStatus(BaseModel):
    has_new_role_data: bool
    has_legacy_role_data: bool
    needs_migration: bool
    compatibility_mode: str


# ---- Validation ----
class ValidationErrorItem(BaseModel):
    code: str
    message: str
    severity: Severity
    field: Optional[str] = None
    value: Optional[Any] = None

class ValidationWarningItem(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    value: Optional[Any] = None
    recommendation: Optional[str] = None

class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationErrorItem] = []
    warnings: List[ValidationWarningItem] = []
    metadata: Dict[str, Any] = {}

class ValidationIssue(BaseModel):
    user_id: str
    issue_type: str
    severity: Severity
    description: str
    user_email: Optional[str] = None
    suggested_fix: Optional[str] = None
    metadata: Dict[str, Any] = {}

class ValidationSummary(BaseModel):
    critical_issues: int = 0
    high_priority_issues: int = 0
    medium_priority_issues: int = 0
    low_priority_issues: int = 0
    total_issues: int = 0
    health_score: int = 100
    incomplete: bool = False

class SystemValidationReport(BaseModel):
    timestamp: datetime
    total_users: int
    valid_users: int
    invalid_users: int
    issues: List[ValidationIssue]
    summary: ValidationSummary
    duration_ms: Optional[int] = None


# ---- Rollback ----
class RollbackAction(BaseModel):
    type: RollbackActionType
    user_id: str
    details: Dict[str, Any] = {}
    success: bool
    error: Optional[str] = None

class RollbackError(BaseModel):
    user_id: str
    action: str
    error: str
    severity: Severity

class RollbackResult(BaseModel):
    success: bool
    operation_id: str
    affected_users: int
    rollback_actions: List[RollbackAction] = []
    errors: List[RollbackError] = []
    warnings: List[str] = []
    metadata: Dict[str, Any] = {}

class SnapshotInfo(BaseModel):
    id: str
    timestamp: datetime
    description: str
    user_count: int
    assignment_count: int
    metadata: Dict[str, Any] = {}

class RollbackOperationOut(BaseModel):
    id: str
    type: RollbackOperationType
    timestamp: datetime
    affected_users: List[str]
    reason: Optional[str] = None
    user_id: Optional[str] = None
    original_state: Dict[str, Any] = {}
    rollback_state: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}


# ---- Migration ----
class MigrationReport(BaseModel):
    dry_run: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_users: int = 0
    processed_users: int = 0
    migrated_users: int = 0
    skipped_users: int = 0
    failed_users: int = 0
    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    snapshot_id: Optional[str] = None


# ---- Audit ----
class RoleAuditLogOut(BaseModel):
    id: str
    user_id: str
    old_role: Optional[str] = None
    new_role: Optional[str] = None
    timestamp: datetime
    actor: Optional[str] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True
