"""Tests for the store access layer: error translation, deadlines, retries, guarded inserts."""

import time
from unittest import mock

import pytest
from sqlalchemy import exc as sa_exc

from rolekeeper.core.config import settings
from rolekeeper.core.exceptions import (
    ConflictError,
    OperationCancelledError,
    StoreError,
    StoreUnavailableError,
)
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.schemas.enums import AssignmentStatus
from rolekeeper.services.store import RoleStore, StoreBackedService, translate_error

from factories import make_assignment, make_user


class _CancelledOrig(Exception):
    pgcode = "57014"


class TestTranslateError:
    """SQLAlchemy failures map onto the role error hierarchy."""

    def test_integrity_error_is_conflict(self):
        err = sa_exc.IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert isinstance(translate_error(err, "insert"), ConflictError)

    def test_operational_error_is_transient(self):
        err = sa_exc.OperationalError("SELECT", {}, Exception("server has gone away"))
        translated = translate_error(err, "get_user")
        assert isinstance(translated, StoreUnavailableError)
        assert translated.operation == "get_user"

    def test_pool_timeout_is_transient(self):
        assert isinstance(translate_error(sa_exc.TimeoutError("pool exhausted"), "read"), StoreUnavailableError)

    def test_postgres_cancel_is_cancellation(self):
        err = sa_exc.OperationalError("SELECT", {}, _CancelledOrig("canceling statement due to statement timeout"))
        assert isinstance(translate_error(err, "read"), OperationCancelledError)

    def test_other_errors_are_store_errors(self):
        translated = translate_error(sa_exc.SQLAlchemyError("boom"), "read")
        assert type(translated) is StoreError


class TestRoleStore:
    def test_expired_deadline_cancels_call(self, session_factory):
        store = RoleStore(session_factory(), timeout_seconds=0.01)
        time.sleep(0.05)
        with pytest.raises(OperationCancelledError):
            store.get_user("anyone")
        store.db.close()

    def test_no_deadline_when_timeout_is_zero(self, session_factory):
        with RoleStore(session_factory(), timeout_seconds=0) as store:
            assert store.get_user("missing") is None

    def test_guarded_insert_conflict_keeps_transaction_usable(self, session_factory, seed, institution):
        user = seed(make_user(institution))
        first = make_assignment(user, "teacher")
        first.guard()
        seed(first)

        with RoleStore(session_factory()) as store:
            with pytest.raises(ConflictError):
                store.insert_guarded(make_assignment(user, "teacher"))
            winner = store.find_by_guard_key(first.tuple_key)
            assert winner.id == first.id
            store.commit()

    def test_unguarded_duplicates_are_allowed(self, session_factory, seed, institution):
        user = seed(make_user(institution))
        seed(make_assignment(user, "teacher"), make_assignment(user, "teacher"))

        with RoleStore(session_factory()) as store:
            groups = store.duplicate_assignment_groups()
        assert len(groups) == 1
        assert len(groups[0][4]) == 2

    def test_leaving_active_clears_guard(self, institution):
        assignment = make_assignment(make_user(institution), "student")
        assignment.guard()
        assert assignment.guard_key
        assignment.set_status(AssignmentStatus.revoked)
        assert assignment.guard_key is None


class TestReadRetry:
    def test_transient_failures_are_retried(self, session_factory):
        service = StoreBackedService(session_factory)
        fn = mock.Mock(side_effect=[StoreUnavailableError("reset"), StoreUnavailableError("reset"), "ok"])
        with mock.patch.object(settings, "READ_RETRY_ATTEMPTS", 3):
            assert service.read(fn) == "ok"
        assert fn.call_count == 3

    def test_retries_are_bounded(self, session_factory):
        service = StoreBackedService(session_factory)
        fn = mock.Mock(side_effect=StoreUnavailableError("down"))
        with mock.patch.object(settings, "READ_RETRY_ATTEMPTS", 2):
            with pytest.raises(StoreUnavailableError):
                service.read(fn)
        assert fn.call_count == 2

    def test_non_transient_errors_are_not_retried(self, session_factory):
        service = StoreBackedService(session_factory)
        fn = mock.Mock(side_effect=StoreError("malformed"))
        with pytest.raises(StoreError):
            service.read(fn)
        assert fn.call_count == 1


class TestStaleGuard:
    """A row that left active without releasing its guard key must not block the slot."""

    def _guarded(self, seed, user, role="teacher"):
        row = make_assignment(user, role)
        row.guard()
        return seed(row)

    def test_insert_reclaims_slot_from_expired_row(self, session_factory, seed, fetch, institution, update_status):
        user = seed(make_user(institution))
        old = self._guarded(seed, user)
        update_status(old.id, "expired")

        with RoleStore(session_factory()) as store:
            fresh = store.insert_guarded(make_assignment(user, "teacher"))
            store.commit()

        stale = fetch(lambda s: s.get(RoleAssignment, old.id))
        assert stale.status == "expired"
        assert stale.guard_key is None
        assert fetch(lambda s: s.get(RoleAssignment, fresh.id)).guard_key == old.tuple_key

    def test_active_holder_still_conflicts(self, session_factory, seed, fetch, institution, update_status):
        user = seed(make_user(institution))
        old = self._guarded(seed, user)
        update_status(old.id, "active")

        with RoleStore(session_factory()) as store:
            with pytest.raises(ConflictError):
                store.insert_guarded(make_assignment(user, "teacher"))
        assert fetch(lambda s: s.get(RoleAssignment, old.id)).guard_key == old.tuple_key
