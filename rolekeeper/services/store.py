"""Store access — short-lived sessions with deadlines and error translation.

Every service opens a ``RoleStore`` per call, does its reads/writes through
it, and closes it. Store methods check the call deadline first and translate
SQLAlchemy failures into the ``rolekeeper.core.exceptions`` hierarchy so the
services above never see driver-specific errors.
"""

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import func, select, delete
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import (
    ConflictError,
    OperationCancelledError,
    RoleSystemError,
    StoreError,
    StoreUnavailableError,
)
from rolekeeper.db.session import get_session_factory
from rolekeeper.models.institution import Department, Institution
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.models.role_audit_log import RoleAuditLog
from rolekeeper.models.rollback import RollbackOperation, RollbackSnapshot
from rolekeeper.models.user import User
from rolekeeper.schemas.enums import AssignmentStatus

T = TypeVar("T")

# SQLSTATE for "canceling statement due to statement timeout / user request"
_PG_QUERY_CANCELED = "57014"


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by every stored column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def translate_error(error: Exception, operation: str) -> RoleSystemError:
    """Map a SQLAlchemy exception onto the core's error taxonomy."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == _PG_QUERY_CANCELED:
        return OperationCancelledError(f"{operation}: statement cancelled by the store")
    if isinstance(error, sa_exc.IntegrityError):
        return ConflictError(f"{operation}: {orig or error}")
    if isinstance(
        error,
        (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError, sa_exc.InterfaceError),
    ):
        return StoreUnavailableError(f"{operation}: {orig or error}", operation=operation)
    return StoreError(f"{operation}: {error}", operation=operation)


def store_call(fn):
    """Check the deadline, run ``fn``, and translate store failures."""

    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        self.check_deadline(fn.__name__)
        try:
            return fn(self, *args, **kwargs)
        except sa_exc.SQLAlchemyError as e:
            raise translate_error(e, fn.__name__) from e

    return wrapper


class RoleStore:
    """Read/write primitives over users, assignments, audit rows and rollback logs."""

    def __init__(self, session: Session, timeout_seconds: Optional[float] = None):
        self.db = session
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def __enter__(self) -> "RoleStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.db.close()

    def check_deadline(self, operation: str) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise OperationCancelledError(f"{operation}: store call deadline exceeded")

    @property
    def dialect(self) -> str:
        return self.db.get_bind().dialect.name

    # ---- Transactions ----

    @store_call
    def flush(self) -> None:
        self.db.flush()

    @store_call
    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Run a block inside a SAVEPOINT; failures undo only that block."""
        self.check_deadline("savepoint")
        try:
            with self.db.begin_nested():
                yield
        except sa_exc.SQLAlchemyError as e:
            raise translate_error(e, "savepoint") from e

    @store_call
    def detach(self, obj: Optional[T]) -> Optional[T]:
        """Load ``obj`` fully and release it from the session so it outlives the store."""
        if obj is not None:
            self.db.refresh(obj)
            self.db.expunge(obj)
        return obj

    @store_call
    def add(self, obj) -> None:
        self.db.add(obj)
        self.db.flush()

    # ---- Users ----

    @store_call
    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    @store_call
    def get_users(self, user_ids: Optional[Sequence[str]] = None) -> List[User]:
        query = select(User).order_by(User.id)
        if user_ids:
            query = query.where(User.id.in_(list(user_ids)))
        return list(self.db.scalars(query))

    @store_call
    def list_user_refs(self) -> List[Tuple[str, str]]:
        rows = self.db.execute(select(User.id, User.email).order_by(User.id))
        return [(row[0], row[1]) for row in rows]

    @store_call
    def list_legacy_only_users(self) -> List[User]:
        """Users carrying a legacy role but no active new-model role."""
        query = (
            select(User)
            .where(User.role.is_not(None), User.role != "")
            .where((User.primary_role.is_(None)) | (User.role_status != "active") | (User.role_status.is_(None)))
            .order_by(User.id)
        )
        return list(self.db.scalars(query))

    @store_call
    def update_user_role(self, user: User, primary_role: Optional[str], role_status: Optional[str]) -> None:
        user.primary_role = primary_role
        user.role_status = role_status
        user.updated_at = utcnow()
        self.db.flush()

    # ---- Referential targets ----

    @store_call
    def institution_exists(self, institution_id: str) -> bool:
        return self.db.get(Institution, institution_id) is not None

    @store_call
    def department_exists(self, department_id: str) -> bool:
        return self.db.get(Department, department_id) is not None

    # ---- Assignments ----

    @store_call
    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        return self.db.get(RoleAssignment, assignment_id)

    @store_call
    def list_assignments(self, user_id: str, status: Optional[AssignmentStatus] = None) -> List[RoleAssignment]:
        query = select(RoleAssignment).where(RoleAssignment.user_id == user_id)
        if status is not None:
            query = query.where(RoleAssignment.status == status.value)
        return list(self.db.scalars(query.order_by(RoleAssignment.assigned_at, RoleAssignment.id)))

    @store_call
    def list_assignments_for_users(self, user_ids: Optional[Sequence[str]] = None) -> List[RoleAssignment]:
        query = select(RoleAssignment).order_by(RoleAssignment.user_id, RoleAssignment.assigned_at)
        if user_ids:
            query = query.where(RoleAssignment.user_id.in_(list(user_ids)))
        return list(self.db.scalars(query))

    @store_call
    def find_active_assignment(self, user_id: str, role: str) -> Optional[RoleAssignment]:
        query = (
            select(RoleAssignment)
            .where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role == role,
                RoleAssignment.status == AssignmentStatus.active.value,
            )
            .order_by(RoleAssignment.assigned_at)
            .limit(1)
        )
        return self.db.scalars(query).first()

    @store_call
    def find_by_guard_key(self, guard_key: str) -> Optional[RoleAssignment]:
        query = select(RoleAssignment).where(RoleAssignment.guard_key == guard_key)
        return self.db.scalars(query.execution_options(populate_existing=True)).first()

    @store_call
    def assignments_by_bulk_operation(self, bulk_operation_id: str) -> List[RoleAssignment]:
        query = (
            select(RoleAssignment)
            .where(RoleAssignment.bulk_operation_id == bulk_operation_id)
            .order_by(RoleAssignment.assigned_at, RoleAssignment.id)
        )
        return list(self.db.scalars(query))

    @store_call
    def orphaned_assignments(self) -> List[RoleAssignment]:
        query = (
            select(RoleAssignment)
            .outerjoin(User, RoleAssignment.user_id == User.id)
            .where(User.id.is_(None))
            .order_by(RoleAssignment.id)
        )
        return list(self.db.scalars(query))

    @store_call
    def duplicate_assignment_groups(self) -> List[Tuple[str, str, Optional[str], Optional[str], List[str]]]:
        """Active assignments sharing (user, role, institution, department), NULLs grouped together."""
        grouped = (
            select(
                RoleAssignment.user_id,
                RoleAssignment.role,
                RoleAssignment.institution_id,
                RoleAssignment.department_id,
            )
            .where(RoleAssignment.status == AssignmentStatus.active.value)
            .group_by(
                RoleAssignment.user_id,
                RoleAssignment.role,
                RoleAssignment.institution_id,
                RoleAssignment.department_id,
            )
            .having(func.count(RoleAssignment.id) > 1)
        )
        groups = []
        for user_id, role, institution_id, department_id in self.db.execute(grouped).all():
            query = select(RoleAssignment.id).where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role == role,
                RoleAssignment.status == AssignmentStatus.active.value,
                RoleAssignment.institution_id.is_(None) if institution_id is None
                else RoleAssignment.institution_id == institution_id,
                RoleAssignment.department_id.is_(None) if department_id is None
                else RoleAssignment.department_id == department_id,
            )
            ids = sorted(self.db.scalars(query))
            groups.append((user_id, role, institution_id, department_id, ids))
        return groups

    @store_call
    def count_active_role(self, role: str) -> int:
        query = select(func.count(RoleAssignment.id)).where(
            RoleAssignment.role == role,
            RoleAssignment.status == AssignmentStatus.active.value,
        )
        return int(self.db.scalar(query) or 0)

    def insert_guarded(self, assignment: RoleAssignment) -> RoleAssignment:
        """Insert an active assignment that claims its tuple's guard key.

        A slot still held by a row that has since left ``active`` (status
        changed outside this store) is released and the insert retried once.
        Raises ConflictError when an active row holds the slot.
        """
        assignment.guard()
        try:
            self._insert(assignment)
        except ConflictError:
            holder = self.find_by_guard_key(assignment.guard_key)
            if holder is not None and holder.status == AssignmentStatus.active.value:
                raise
            if holder is not None:
                self.release_guard(holder)
            self._insert(assignment)
        return assignment

    def _insert(self, assignment: RoleAssignment) -> None:
        with self.savepoint():
            self.db.add(assignment)
            self.db.flush()

    @store_call
    def release_guard(self, assignment: RoleAssignment) -> None:
        assignment.guard_key = None
        self.db.flush()

    @store_call
    def delete_assignment(self, assignment: RoleAssignment) -> None:
        self.db.delete(assignment)
        self.db.flush()

    @store_call
    def delete_assignments_for_users(self, user_ids: Sequence[str]) -> int:
        if not user_ids:
            return 0
        result = self.db.execute(
            delete(RoleAssignment)
            .where(RoleAssignment.user_id.in_(list(user_ids)))
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return result.rowcount or 0

    # ---- Audit log ----

    @store_call
    def latest_audit_before(self, user_id: str, before: datetime) -> Optional[RoleAuditLog]:
        query = (
            select(RoleAuditLog)
            .where(RoleAuditLog.user_id == user_id, RoleAuditLog.timestamp < before)
            .order_by(RoleAuditLog.timestamp.desc())
            .limit(1)
        )
        return self.db.scalars(query).first()

    @store_call
    def audit_logs_since(self, since: datetime, user_ids: Optional[Sequence[str]] = None) -> List[RoleAuditLog]:
        query = select(RoleAuditLog).where(RoleAuditLog.timestamp >= since)
        if user_ids:
            query = query.where(RoleAuditLog.user_id.in_(list(user_ids)))
        return list(self.db.scalars(query.order_by(RoleAuditLog.timestamp)))

    @store_call
    def query_audit_logs(self, user_id: Optional[str], page: int, page_size: int) -> Tuple[int, List[RoleAuditLog]]:
        query = select(RoleAuditLog)
        count = select(func.count(RoleAuditLog.id))
        if user_id:
            query = query.where(RoleAuditLog.user_id == user_id)
            count = count.where(RoleAuditLog.user_id == user_id)
        total = int(self.db.scalar(count) or 0)
        rows = self.db.scalars(
            query.order_by(RoleAuditLog.timestamp.desc()).offset((page - 1) * page_size).limit(page_size)
        )
        return total, list(rows)

    # ---- Rollback logs ----

    @store_call
    def get_snapshot(self, snapshot_id: str) -> Optional[RollbackSnapshot]:
        return self.db.get(RollbackSnapshot, snapshot_id)

    @store_call
    def list_snapshots(self, limit: int) -> List[RollbackSnapshot]:
        query = select(RollbackSnapshot).order_by(
            RollbackSnapshot.created_at.desc(), RollbackSnapshot.id.desc()
        ).limit(limit)
        return list(self.db.scalars(query))

    @store_call
    def list_operations(self, limit: int) -> List[RollbackOperation]:
        query = select(RollbackOperation).order_by(
            RollbackOperation.timestamp.desc(), RollbackOperation.id.desc()
        ).limit(limit)
        return list(self.db.scalars(query))


class StoreBackedService:
    """Base for services that open one store per call."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, timeout_seconds: Optional[float] = None):
        self._session_factory = session_factory
        self._timeout = settings.STORE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def open_store(self) -> RoleStore:
        return RoleStore(self.session_factory(), self._timeout)

    def read(self, fn: Callable[[RoleStore], T]) -> T:
        """Run a read-only ``fn`` against a fresh store, retrying transient faults."""
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(max(1, settings.READ_RETRY_ATTEMPTS)),
            wait=wait_exponential(multiplier=0.1, min=0.05, max=settings.READ_RETRY_MAX_WAIT_SECONDS),
            retry=retry_if_exception_type(StoreUnavailableError),
        )
        for attempt in retrying:
            with attempt:
                with self.open_store() as store:
                    return fn(store)
