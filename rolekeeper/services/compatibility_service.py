"""Compatibility resolver — one authoritative role across legacy and new-model data.

Read paths favour availability: a store fault is logged on the
``[ROLE_COMPATIBILITY]`` side channel and turned into ``None``/``[]``.
Cancellation is the exception and always propagates.
"""

import json
import logging
from typing import List, NamedTuple, Optional, Protocol, Union

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    OperationCancelledError,
    RoleSystemError,
    StoreError,
)
from rolekeeper.models.role_assignment import RoleAssignment, active_tuple_key
from rolekeeper.models.user import User
from rolekeeper.schemas.enums import AssignmentStatus, MigrationMode, RoleName, RoleStatus
from rolekeeper.schemas.schemas import AssignmentMetadata, CompatibilityStatus
from rolekeeper.services.audit_service import RoleAuditService
from rolekeeper.services.store import RoleStore, StoreBackedService, utcnow

logger = logging.getLogger("rolekeeper.compatibility")

LEGACY_ROLE_MAP = {
    "student": RoleName.student,
    "teacher": RoleName.teacher,
    "instructor": RoleName.teacher,
    "faculty": RoleName.teacher,
    "staff": RoleName.teacher,
    "admin": RoleName.institution_admin,
    "administrator": RoleName.institution_admin,
    "institution_admin": RoleName.institution_admin,
    "dept_admin": RoleName.department_admin,
    "department_admin": RoleName.department_admin,
    "system_admin": RoleName.system_admin,
    "super_admin": RoleName.system_admin,
}

MIGRATION_REASON = "migration_on_read"


def map_legacy_role(legacy_role: Optional[str]) -> Optional[RoleName]:
    """Map a free-form legacy role string to a canonical role; unknown values give None."""
    if not legacy_role:
        return None
    return LEGACY_ROLE_MAP.get(legacy_role.strip().lower())


def parse_role(value: Optional[str], operation: str) -> Optional[RoleName]:
    """Parse a stored canonical role, treating unknown values as a malformed row."""
    if value is None:
        return None
    try:
        return RoleName(value)
    except ValueError:
        raise StoreError(f"{operation}: malformed role value {value!r}", operation=operation)


class CompatibilityConfig:
    """Resolver behaviour, fixed at construction."""

    def __init__(
        self,
        legacy_support_enabled: bool = True,
        migration_mode: Union[MigrationMode, str] = MigrationMode.hybrid,
        fallback_to_legacy: bool = True,
        log_issues: bool = True,
    ):
        try:
            self.migration_mode = MigrationMode(migration_mode)
        except ValueError:
            raise ConfigurationError(
                f"Invalid migration mode {migration_mode!r}; expected one of "
                + ", ".join(m.value for m in MigrationMode)
            )
        self.legacy_support_enabled = legacy_support_enabled
        self.fallback_to_legacy = fallback_to_legacy
        self.log_issues = log_issues

    @classmethod
    def from_settings(cls) -> "CompatibilityConfig":
        return cls(
            legacy_support_enabled=settings.LEGACY_SUPPORT_ENABLED,
            migration_mode=settings.MIGRATION_MODE,
            fallback_to_legacy=settings.FALLBACK_TO_LEGACY,
            log_issues=settings.LOG_COMPATIBILITY_ISSUES,
        )

    @property
    def legacy_reads_allowed(self) -> bool:
        return (
            self.legacy_support_enabled
            and self.fallback_to_legacy
            and self.migration_mode != MigrationMode.strict
        )


class MigrationOutcome(NamedTuple):
    assignment: Optional[RoleAssignment]
    did_migrate: bool


# ---- Role sources ----

class RoleSource(Protocol):
    name: str

    def primary_role(self, user: User) -> Optional[RoleName]:
        ...

    def roles(self, store: RoleStore, user: User) -> List[RoleName]:
        ...


class NewModelRoleSource:
    """Primary role from the user row, role set from active assignments."""
    name = "new_model"

    def primary_role(self, user: User) -> Optional[RoleName]:
        if not user.primary_role or user.role_status != RoleStatus.active.value:
            return None
        return parse_role(user.primary_role, "primary_role")

    def roles(self, store: RoleStore, user: User) -> List[RoleName]:
        seen: List[RoleName] = []
        for assignment in store.list_assignments(user.id, AssignmentStatus.active):
            role = parse_role(assignment.role, "active_roles")
            if role not in seen:
                seen.append(role)
        return seen


class LegacyRoleSource:
    """The single pre-migration ``role`` column, mapped through LEGACY_ROLE_MAP."""
    name = "legacy"

    def primary_role(self, user: User) -> Optional[RoleName]:
        return map_legacy_role(user.role)

    def roles(self, store: RoleStore, user: User) -> List[RoleName]:
        role = map_legacy_role(user.role)
        return [role] if role else []


class RoleCompatibilityService(StoreBackedService):
    """Resolves effective roles during the legacy → assignment-model transition."""

    def __init__(self, config: Optional[CompatibilityConfig] = None, session_factory=None, timeout_seconds=None):
        super().__init__(session_factory, timeout_seconds)
        self.config = config or CompatibilityConfig.from_settings()
        self.new_model = NewModelRoleSource()
        self.legacy = LegacyRoleSource()

    @property
    def sources(self) -> List[RoleSource]:
        if self.config.legacy_reads_allowed:
            return [self.new_model, self.legacy]
        return [self.new_model]

    def is_migration_mode(self) -> bool:
        return self.config.legacy_support_enabled and self.config.migration_mode != MigrationMode.strict

    # ---- Reads ----

    def get_user_role(self, user_id: str) -> Optional[RoleName]:
        """Return the user's effective role, migrating legacy-only users in hybrid mode."""
        try:
            role, source = self.read(lambda store: self._resolve_primary(store, user_id))
        except OperationCancelledError:
            raise
        except StoreError as e:
            self._log_issue("get_user_role", e, {"user_id": user_id})
            return None

        if role is not None and source is self.legacy and self.config.migration_mode == MigrationMode.hybrid:
            try:
                self.ensure_migrated(user_id)
            except OperationCancelledError:
                raise
            except RoleSystemError as e:
                # the read still answers with the legacy-derived role
                self._log_issue("ensure_migrated", e, {"user_id": user_id, "mapped_role": role.value})
        return role

    def get_user_roles(self, user_id: str) -> List[RoleName]:
        """Every distinct active-assignment role, or the legacy role as a one-element list."""
        try:
            return self.read(lambda store: self._resolve_roles(store, user_id))
        except OperationCancelledError:
            raise
        except StoreError as e:
            self._log_issue("get_user_roles", e, {"user_id": user_id})
            return []

    def has_role(self, user_id: str, role: Union[RoleName, str]) -> bool:
        try:
            wanted = RoleName(role)
        except ValueError:
            return False
        return wanted in self.get_user_roles(user_id)

    def get_compatibility_status(self, user_id: str) -> CompatibilityStatus:
        def _load(store: RoleStore) -> CompatibilityStatus:
            user = store.get_user(user_id)
            has_new = False
            has_legacy = False
            if user is not None:
                has_new = bool(user.primary_role) or bool(store.list_assignments(user_id, AssignmentStatus.active))
                has_legacy = bool(user.role)
            return CompatibilityStatus(
                has_new_role_data=has_new,
                has_legacy_role_data=has_legacy,
                needs_migration=has_legacy and not has_new,
                compatibility_mode=self.config.migration_mode.value,
            )

        try:
            return self.read(_load)
        except OperationCancelledError:
            raise
        except StoreError as e:
            self._log_issue("get_compatibility_status", e, {"user_id": user_id})
            return CompatibilityStatus(
                has_new_role_data=False,
                has_legacy_role_data=False,
                needs_migration=False,
                compatibility_mode=self.config.migration_mode.value,
            )

    def get_user_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        """Active assignments, or one unsaved compatibility assignment built from legacy data."""

        def _load(store: RoleStore) -> List[RoleAssignment]:
            assignments = store.list_assignments(user_id, AssignmentStatus.active)
            if assignments:
                return assignments
            if not self.config.legacy_reads_allowed:
                return []
            user = store.get_user(user_id)
            if user is None:
                return []
            mapped = map_legacy_role(user.role)
            if mapped is None:
                return []
            compat = RoleAssignment(
                id=f"compat_{user_id}",
                user_id=user_id,
                role=mapped.value,
                status=AssignmentStatus.active.value,
                assigned_by=user_id,
                assigned_at=utcnow(),
                is_temporary=False,
                institution_id=user.institution_id,
                department_id=user.department_id,
            )
            compat.meta = AssignmentMetadata(compatibility=True, legacy_role=user.role)
            return [compat]

        try:
            return self.read(_load)
        except OperationCancelledError:
            raise
        except StoreError as e:
            self._log_issue("get_user_role_assignments", e, {"user_id": user_id})
            return []

    # ---- Read-repair ----

    def ensure_migrated(self, user_id: str, actor: Optional[str] = None, reason: str = MIGRATION_REASON) -> MigrationOutcome:
        """Create the new-model assignment for a legacy-only user if it is missing.

        Safe under concurrent callers: the insert claims the tuple's guard
        key, and the loser of a race returns the winner's row.
        """
        if not self.config.legacy_support_enabled:
            raise ConfigurationError("Legacy support is disabled; migration is not available")

        with self.open_store() as store:
            user = store.get_user(user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            mapped = map_legacy_role(user.role)
            if mapped is None:
                return MigrationOutcome(None, False)

            existing = store.find_active_assignment(user_id, mapped.value)
            if existing is not None:
                if not user.primary_role or user.role_status != RoleStatus.active.value:
                    store.update_user_role(user, mapped.value, RoleStatus.active.value)
                    store.commit()
                return MigrationOutcome(store.detach(existing), False)

            now = utcnow()
            assignment = RoleAssignment(
                user_id=user_id,
                role=mapped.value,
                status=AssignmentStatus.active.value,
                assigned_by=actor or user_id,
                assigned_at=now,
                is_temporary=False,
                institution_id=user.institution_id,
                department_id=user.department_id,
            )
            assignment.meta = AssignmentMetadata(migrated_on_the_fly=True, legacy_role=user.role)
            previous_role = user.primary_role

            try:
                store.insert_guarded(assignment)
            except ConflictError:
                # another caller migrated this tuple first; read its row in a fresh transaction
                store.rollback()
                key = active_tuple_key(user_id, mapped.value, user.institution_id, user.department_id)
                logger.info("Migration for user %s already applied by a concurrent caller", user_id)
                return MigrationOutcome(store.detach(store.find_by_guard_key(key)), False)

            store.update_user_role(user, mapped.value, RoleStatus.active.value)
            RoleAuditService.record_role_change(
                store,
                user_id=user_id,
                old_role=previous_role,
                new_role=mapped.value,
                actor=actor or user_id,
                reason=reason,
                timestamp=now,
            )
            store.commit()
            store.detach(assignment)
            logger.info("Migrated user %s from legacy role %r to %s", user_id, user.role, mapped.value)
            return MigrationOutcome(assignment, True)

    def force_migrate_user(self, user_id: str, actor: Optional[str] = None) -> bool:
        """Run the read-repair regardless of mode; True when a new assignment was written."""
        outcome = self.ensure_migrated(user_id, actor=actor, reason="forced_migration")
        return outcome.did_migrate

    # ---- Internals ----

    def _resolve_primary(self, store: RoleStore, user_id: str):
        user = store.get_user(user_id)
        if user is None:
            return None, None
        for source in self.sources:
            try:
                role = source.primary_role(user)
            except StoreError as e:
                if source is self.new_model and self.config.migration_mode == MigrationMode.permissive:
                    self._log_issue("get_user_role", e, {"user_id": user_id, "source": source.name})
                    continue
                raise
            if role is not None:
                return role, source
        return None, None

    def _resolve_roles(self, store: RoleStore, user_id: str) -> List[RoleName]:
        user = store.get_user(user_id)
        if user is None:
            return []
        for source in self.sources:
            try:
                roles = source.roles(store, user)
            except StoreError as e:
                if source is self.new_model and self.config.migration_mode == MigrationMode.permissive:
                    self._log_issue("get_user_roles", e, {"user_id": user_id, "source": source.name})
                    continue
                raise
            if roles:
                return roles
        return []

    def _log_issue(self, operation: str, error: Exception, context: dict) -> None:
        if not self.config.log_issues:
            return
        payload = {
            "timestamp": utcnow().isoformat(),
            "service": "RoleCompatibilityService",
            "operation": operation,
            "error": str(error),
            "context": context,
            "mode": self.config.migration_mode.value,
        }
        logger.warning("[ROLE_COMPATIBILITY] %s", json.dumps(payload, default=str))
