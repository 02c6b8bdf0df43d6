"""Validation engine — read-only integrity checks over role data.

Nothing here writes. Every check reports through ``ValidationResult`` or
``ValidationIssue`` records; one bad user never stops a system-wide run.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as SchemaValidationError

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import ConfigurationError, OperationCancelledError, StoreError
from rolekeeper.schemas.enums import AssignmentStatus, RoleName, Severity
from rolekeeper.schemas.schemas import (
    AssignmentCandidate,
    SystemValidationReport,
    ValidationErrorItem,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
    ValidationWarningItem,
)
from rolekeeper.services.store import RoleStore, StoreBackedService, as_naive_utc, utcnow

logger = logging.getLogger("rolekeeper.validation")

SYSTEM_USER = "SYSTEM"

SUGGESTED_FIXES = {
    "USER_NOT_FOUND": "Remove orphaned references or restore user data",
    "MISSING_PRIMARY_ROLE": "Assign a primary role to the user",
    "PRIMARY_ROLE_MISMATCH": "Update primary role to match active assignments",
    "INVALID_ROLE": "Update role to a valid value",
    "INVALID_STATUS": "Update status to a valid value",
    "EXPIRED_ACTIVE_ASSIGNMENT": "Update assignment status to expired",
    "TEMPORARY_NO_EXPIRATION": "Add expiration date to temporary assignment",
    "INSTITUTION_MISMATCH": "Verify and correct institutional assignments",
    "INVALID_EXPIRATION_DATE": "Correct expiration date to be after assignment date",
    "ASSIGNMENT_FETCH_ERROR": "Re-run validation once the store is reachable",
    "VALIDATION_ERROR": "Re-run validation once the store is reachable",
    "ORPHANED_ASSIGNMENT": "Remove assignment for non-existent user",
    "DUPLICATE_ASSIGNMENT": "Consolidate or remove duplicate assignments",
    "TOO_MANY_SYSTEM_ADMINS": "Review system admin assignments for necessity",
}

SEVERITY_PENALTIES = {
    Severity.critical: 20,
    Severity.high: 10,
    Severity.medium: 5,
    Severity.low: 1,
}


def suggested_fix(code: str) -> str:
    return SUGGESTED_FIXES.get(code, "Manual review required")


def calculate_validation_summary(issues: Iterable[ValidationIssue], incomplete: bool = False) -> ValidationSummary:
    """Count issues by severity and derive the 0-100 health score."""
    counts = {severity: 0 for severity in Severity}
    for issue in issues:
        counts[Severity(issue.severity)] += 1

    penalty = sum(SEVERITY_PENALTIES[severity] * count for severity, count in counts.items())
    return ValidationSummary(
        critical_issues=counts[Severity.critical],
        high_priority_issues=counts[Severity.high],
        medium_priority_issues=counts[Severity.medium],
        low_priority_issues=counts[Severity.low],
        total_issues=sum(counts.values()),
        health_score=max(0, 100 - penalty),
        incomplete=incomplete,
    )


def _check_temporal(
    assignment_id: Optional[str],
    assigned_at: Optional[datetime],
    expires_at: Optional[datetime],
    is_temporary: bool,
    status: Optional[str],
    now: datetime,
    errors: List[ValidationErrorItem],
    warnings: List[ValidationWarningItem],
) -> None:
    label = f"Assignment {assignment_id}" if assignment_id else "Assignment"
    if expires_at and assigned_at and expires_at <= assigned_at:
        errors.append(ValidationErrorItem(
            code="INVALID_EXPIRATION_DATE",
            message=f"{label} expires before it was assigned",
            field="expires_at",
            value=expires_at.isoformat(),
            severity=Severity.high,
        ))
    if is_temporary and not expires_at:
        errors.append(ValidationErrorItem(
            code="TEMPORARY_NO_EXPIRATION",
            message=f"{label} is temporary but has no expiration date",
            field="expires_at",
            severity=Severity.high,
        ))
    if expires_at and expires_at < now and status == AssignmentStatus.active.value:
        warnings.append(ValidationWarningItem(
            code="EXPIRED_ACTIVE_ASSIGNMENT",
            message=f"{label} is expired but still active",
            field="status",
            value=status,
            recommendation="Update status to expired",
        ))


class RoleValidationService(StoreBackedService):
    """Detects integrity violations in users, assignments, and their references."""

    def __init__(
        self,
        session_factory=None,
        timeout_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        system_admin_limit: Optional[int] = None,
    ):
        super().__init__(session_factory, timeout_seconds)
        self.concurrency = settings.VALIDATION_CONCURRENCY if concurrency is None else concurrency
        if self.concurrency < 1:
            raise ConfigurationError(f"Validation concurrency must be at least 1, got {self.concurrency}")
        self.system_admin_limit = settings.SYSTEM_ADMIN_LIMIT if system_admin_limit is None else system_admin_limit

    # ---- Single user ----

    def validate_user_roles(self, user_id: str) -> ValidationResult:
        errors: List[ValidationErrorItem] = []
        warnings: List[ValidationWarningItem] = []
        metadata: Dict[str, Any] = {"user_id": user_id}

        # user and assignments share one read transaction
        loaded = []

        def _load(store: RoleStore):
            loaded.clear()
            user = store.get_user(user_id)
            if user is None:
                return None, []
            loaded.append(user)
            return user, store.list_assignments(user_id)

        try:
            user, assignments = self.read(_load)
        except StoreError as e:
            if not loaded:
                logger.warning("Validation of user %s could not load the user: %s", user_id, e)
                errors.append(ValidationErrorItem(
                    code="VALIDATION_ERROR",
                    message=f"Validation failed: {e}",
                    severity=Severity.critical,
                ))
                metadata["incomplete"] = True
                return ValidationResult(is_valid=False, errors=errors, warnings=warnings, metadata=metadata)
            logger.warning("Validation of user %s could not load assignments: %s", user_id, e)
            errors.append(ValidationErrorItem(
                code="ASSIGNMENT_FETCH_ERROR",
                message="Failed to fetch role assignments",
                severity=Severity.high,
            ))
            user, assignments = loaded[0], []
            metadata["incomplete"] = True

        if user is None:
            errors.append(ValidationErrorItem(
                code="USER_NOT_FOUND",
                message="User not found in database",
                severity=Severity.critical,
            ))
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings, metadata=metadata)

        if not user.primary_role:
            errors.append(ValidationErrorItem(
                code="MISSING_PRIMARY_ROLE",
                message="User has no primary role assigned",
                field="primary_role",
                severity=Severity.high,
            ))
        else:
            active_roles = [a.role for a in assignments if a.status == AssignmentStatus.active.value]
            # silent when there are no active assignments at all
            if active_roles and user.primary_role not in active_roles:
                warnings.append(ValidationWarningItem(
                    code="PRIMARY_ROLE_MISMATCH",
                    message="Primary role does not match any active role assignment",
                    field="primary_role",
                    value=user.primary_role,
                    recommendation="Update primary role to match active assignments",
                ))

        now = utcnow()
        for assignment in assignments:
            _check_temporal(
                assignment.id,
                assignment.assigned_at,
                assignment.expires_at,
                bool(assignment.is_temporary),
                assignment.status,
                now,
                errors,
                warnings,
            )

        for assignment in assignments:
            if assignment.institution_id != user.institution_id:
                warnings.append(ValidationWarningItem(
                    code="INSTITUTION_MISMATCH",
                    message=(
                        f"Assignment institution ({assignment.institution_id}) differs "
                        f"from user institution ({user.institution_id})"
                    ),
                    field="institution_id",
                    value=assignment.institution_id,
                    recommendation="Verify institutional assignment is correct",
                ))

        metadata.update({"user_email": user.email, "assignment_count": len(assignments)})
        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings, metadata=metadata)

    # ---- Candidate record ----

    def validate_role_assignment(self, assignment: Union[AssignmentCandidate, Dict[str, Any]]) -> ValidationResult:
        """Structural, temporal and referential checks on a single candidate record."""
        errors: List[ValidationErrorItem] = []
        warnings: List[ValidationWarningItem] = []

        if not isinstance(assignment, AssignmentCandidate):
            try:
                assignment = AssignmentCandidate.model_validate(assignment)
            except SchemaValidationError as e:
                errors.append(ValidationErrorItem(
                    code="INVALID_RECORD",
                    message=f"Assignment record could not be parsed: {e.error_count()} field error(s)",
                    severity=Severity.critical,
                    value=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
                ))
                return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        metadata: Dict[str, Any] = {
            "assignment_id": assignment.id,
            "user_id": assignment.user_id,
            "role": assignment.role,
        }

        for field, code, label in (
            ("user_id", "MISSING_USER_ID", "User ID"),
            ("role", "MISSING_ROLE", "Role"),
            ("institution_id", "MISSING_INSTITUTION_ID", "Institution ID"),
        ):
            if not getattr(assignment, field):
                errors.append(ValidationErrorItem(
                    code=code, message=f"{label} is required", field=field, severity=Severity.critical,
                ))

        if assignment.role and assignment.role not in {r.value for r in RoleName}:
            errors.append(ValidationErrorItem(
                code="INVALID_ROLE",
                message=f"Invalid role: {assignment.role}",
                field="role",
                value=assignment.role,
                severity=Severity.critical,
            ))
        if assignment.status and assignment.status not in {s.value for s in AssignmentStatus}:
            errors.append(ValidationErrorItem(
                code="INVALID_STATUS",
                message=f"Invalid status: {assignment.status}",
                field="status",
                value=assignment.status,
                severity=Severity.high,
            ))

        _check_temporal(
            assignment.id,
            as_naive_utc(assignment.assigned_at),
            as_naive_utc(assignment.expires_at),
            assignment.is_temporary,
            assignment.status,
            utcnow(),
            errors,
            warnings,
        )

        try:
            self.read(lambda store: self._check_references(store, assignment, errors))
        except StoreError as e:
            logger.warning("Reference checks for assignment %s failed: %s", assignment.id, e)
            errors.append(ValidationErrorItem(
                code="VALIDATION_ERROR",
                message=f"Reference checks failed: {e}",
                severity=Severity.critical,
            ))
            metadata["incomplete"] = True

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings, metadata=metadata)

    @staticmethod
    def _check_references(store: RoleStore, assignment: AssignmentCandidate, errors: List[ValidationErrorItem]) -> None:
        if assignment.user_id and store.get_user(assignment.user_id) is None:
            errors.append(ValidationErrorItem(
                code="INVALID_USER_REFERENCE",
                message="Referenced user does not exist",
                field="user_id",
                value=assignment.user_id,
                severity=Severity.critical,
            ))
        if assignment.institution_id and not store.institution_exists(assignment.institution_id):
            errors.append(ValidationErrorItem(
                code="INVALID_INSTITUTION_REFERENCE",
                message="Referenced institution does not exist",
                field="institution_id",
                value=assignment.institution_id,
                severity=Severity.critical,
            ))
        if assignment.department_id and not store.department_exists(assignment.department_id):
            errors.append(ValidationErrorItem(
                code="INVALID_DEPARTMENT_REFERENCE",
                message="Referenced department does not exist",
                field="department_id",
                value=assignment.department_id,
                severity=Severity.critical,
            ))

    # ---- Population checks ----

    def validate_orphaned_assignments(self) -> List[ValidationIssue]:
        orphans = self.read(lambda store: store.orphaned_assignments())
        return [
            ValidationIssue(
                user_id=assignment.user_id,
                issue_type="ORPHANED_ASSIGNMENT",
                severity=Severity.high,
                description="Role assignment exists for non-existent user",
                suggested_fix=suggested_fix("ORPHANED_ASSIGNMENT"),
                metadata={"assignment_id": assignment.id, "role": assignment.role},
            )
            for assignment in orphans
        ]

    def validate_duplicate_assignments(self) -> List[ValidationIssue]:
        """One issue per (user, role, institution, department) group holding several active rows."""

        def _load(store: RoleStore):
            groups = store.duplicate_assignment_groups()
            emails = {}
            for user_id, *_ in groups:
                if user_id not in emails:
                    user = store.get_user(user_id)
                    emails[user_id] = user.email if user else None
            return groups, emails

        groups, emails = self.read(_load)
        issues = []
        for user_id, role, institution_id, department_id, ids in groups:
            issues.append(ValidationIssue(
                user_id=user_id,
                user_email=emails.get(user_id),
                issue_type="DUPLICATE_ASSIGNMENT",
                severity=Severity.medium,
                description=f"User has multiple active assignments for role: {role}",
                suggested_fix=suggested_fix("DUPLICATE_ASSIGNMENT"),
                metadata={
                    "role": role,
                    "institution_id": institution_id,
                    "department_id": department_id,
                    "assignment_count": len(ids),
                    "assignment_ids": ids,
                },
            ))
        return issues

    def validate_system_constraints(self) -> List[ValidationIssue]:
        count = self.read(lambda store: store.count_active_role(RoleName.system_admin.value))
        if count <= self.system_admin_limit:
            return []
        return [ValidationIssue(
            user_id=SYSTEM_USER,
            issue_type="TOO_MANY_SYSTEM_ADMINS",
            severity=Severity.medium,
            description=f"System has {count} active system administrators",
            suggested_fix=suggested_fix("TOO_MANY_SYSTEM_ADMINS"),
            metadata={"count": count, "limit": self.system_admin_limit},
        )]

    def validate_system(self) -> SystemValidationReport:
        """Validate every user with bounded fan-out, then run the population checks."""
        started = time.monotonic()
        timestamp = utcnow()
        user_refs = self.read(lambda store: store.list_user_refs())
        logger.info("Validating %d users with concurrency %d", len(user_refs), self.concurrency)

        issues: List[ValidationIssue] = []
        incomplete = False
        valid_users = 0

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="role-validate") as pool:
            results = list(pool.map(lambda ref: self._validate_one(ref[0]), user_refs))

        for (user_id, email), result in zip(user_refs, results):
            if result.metadata.get("incomplete"):
                incomplete = True
            if result.is_valid:
                valid_users += 1
            for error in result.errors:
                issues.append(ValidationIssue(
                    user_id=user_id,
                    user_email=email,
                    issue_type=error.code,
                    severity=error.severity,
                    description=error.message,
                    suggested_fix=suggested_fix(error.code),
                    metadata={"field": error.field, "value": error.value},
                ))
            for warning in result.warnings:
                issues.append(ValidationIssue(
                    user_id=user_id,
                    user_email=email,
                    issue_type=warning.code,
                    severity=Severity.low,
                    description=warning.message,
                    suggested_fix=warning.recommendation or suggested_fix(warning.code),
                    metadata={"field": warning.field, "value": warning.value},
                ))

        for check in (
            self.validate_orphaned_assignments,
            self.validate_duplicate_assignments,
            self.validate_system_constraints,
        ):
            try:
                issues.extend(check())
            except (StoreError, OperationCancelledError) as e:
                logger.error("System check %s failed: %s", check.__name__, e)
                incomplete = True

        summary = calculate_validation_summary(issues, incomplete=incomplete)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "System validation finished in %dms: %d issues, health score %d%s",
            duration_ms, summary.total_issues, summary.health_score, " (incomplete)" if incomplete else "",
        )
        return SystemValidationReport(
            timestamp=timestamp,
            total_users=len(user_refs),
            valid_users=valid_users,
            invalid_users=len(user_refs) - valid_users,
            issues=issues,
            summary=summary,
            duration_ms=duration_ms,
        )

    def _validate_one(self, user_id: str) -> ValidationResult:
        try:
            return self.validate_user_roles(user_id)
        except OperationCancelledError as e:
            logger.error("Validation of user %s was cancelled: %s", user_id, e)
            return ValidationResult(
                is_valid=False,
                errors=[ValidationErrorItem(
                    code="VALIDATION_ERROR",
                    message=f"Validation cancelled: {e}",
                    severity=Severity.critical,
                )],
                metadata={"user_id": user_id, "incomplete": True},
            )
