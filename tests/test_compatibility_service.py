"""Tests for the compatibility resolver and its migration-on-read step."""

import logging
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import pytest
from sqlalchemy import select

from rolekeeper.core.exceptions import (
    ConfigurationError,
    OperationCancelledError,
    StoreUnavailableError,
)
from rolekeeper.models.role_audit_log import RoleAuditLog
from rolekeeper.models.user import User
from rolekeeper.schemas.enums import RoleName
from rolekeeper.services.compatibility_service import (
    CompatibilityConfig,
    RoleCompatibilityService,
    map_legacy_role,
)
from rolekeeper.services.migration_service import RoleMigrationService
from rolekeeper.services.store import RoleStore

from factories import make_assignment, make_department, make_user


def _resolver(session_factory, mode="hybrid", **kwargs):
    return RoleCompatibilityService(CompatibilityConfig(migration_mode=mode, **kwargs), session_factory)


class TestLegacyMapping:
    @pytest.mark.parametrize("legacy, expected", [
        ("instructor", RoleName.teacher),
        ("admin", RoleName.institution_admin),
        ("student", RoleName.student),
        ("faculty", RoleName.teacher),
        ("staff", RoleName.teacher),
        ("administrator", RoleName.institution_admin),
        ("dept_admin", RoleName.department_admin),
        ("super_admin", RoleName.system_admin),
        ("Instructor", RoleName.teacher),
        (" ADMIN ", RoleName.institution_admin),
    ])
    def test_known_legacy_roles(self, legacy, expected):
        assert map_legacy_role(legacy) == expected

    @pytest.mark.parametrize("legacy", ["guest", "", None, "janitor"])
    def test_unknown_legacy_roles_map_to_none(self, legacy):
        assert map_legacy_role(legacy) is None


class TestConfig:
    def test_invalid_mode_raises_immediately(self):
        with pytest.raises(ConfigurationError):
            CompatibilityConfig(migration_mode="lenient")

    def test_strict_mode_disables_legacy_reads(self):
        assert not CompatibilityConfig(migration_mode="strict").legacy_reads_allowed
        assert CompatibilityConfig(migration_mode="permissive").legacy_reads_allowed
        assert not CompatibilityConfig(fallback_to_legacy=False).legacy_reads_allowed

    def test_is_migration_mode(self, session_factory):
        assert _resolver(session_factory, "hybrid").is_migration_mode()
        assert not _resolver(session_factory, "strict").is_migration_mode()
        assert not _resolver(session_factory, "hybrid", legacy_support_enabled=False).is_migration_mode()


class TestGetUserRole:
    @pytest.mark.parametrize("legacy, expected", [
        ("instructor", RoleName.teacher),
        ("admin", RoleName.institution_admin),
        ("student", RoleName.student),
    ])
    @pytest.mark.parametrize("mode", ["hybrid", "permissive"])
    def test_legacy_roles_resolve_outside_strict_mode(self, session_factory, seed, institution, legacy, expected, mode):
        user = seed(make_user(institution, role=legacy))
        assert _resolver(session_factory, mode).get_user_role(user.id) == expected

    def test_unknown_legacy_role_resolves_to_none(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="guest"))
        assert _resolver(session_factory).get_user_role(user.id) is None
        assert assignments_for(user.id) == []

    def test_strict_mode_ignores_legacy_data(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="instructor"))
        assert _resolver(session_factory, "strict").get_user_role(user.id) is None
        assert assignments_for(user.id) == []

    def test_no_fallback_ignores_legacy_data(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="instructor"))
        assert _resolver(session_factory, fallback_to_legacy=False).get_user_role(user.id) is None

    def test_new_model_role_wins(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student", primary_role="teacher", role_status="active"))
        assert _resolver(session_factory, "strict").get_user_role(user.id) == RoleName.teacher

    def test_inactive_primary_role_falls_back(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student", primary_role="teacher", role_status="inactive"))
        assert _resolver(session_factory, "permissive").get_user_role(user.id) == RoleName.student

    def test_missing_user_is_none(self, session_factory):
        assert _resolver(session_factory).get_user_role("nobody") is None

    def test_hybrid_mode_migrates_on_read(self, session_factory, seed, institution, get_user, assignments_for, fetch):
        dept = seed(make_department(institution))
        user = seed(make_user(institution, dept, role="instructor"))

        assert _resolver(session_factory).get_user_role(user.id) == RoleName.teacher

        active = assignments_for(user.id, "active")
        assert len(active) == 1
        assert active[0].role == "teacher"
        assert active[0].assigned_by == user.id
        assert active[0].institution_id == institution.id
        assert active[0].department_id == dept.id
        assert active[0].meta.migrated_on_the_fly is True
        assert active[0].meta.legacy_role == "instructor"

        refreshed = get_user(user.id)
        assert refreshed.primary_role == "teacher"
        assert refreshed.role_status == "active"

        audit = fetch(lambda s: list(s.scalars(select(RoleAuditLog).where(RoleAuditLog.user_id == user.id))))
        assert len(audit) == 1
        assert audit[0].new_role == "teacher"
        assert audit[0].reason == "migration_on_read"
        assert audit[0].timestamp == active[0].assigned_at

    def test_permissive_mode_does_not_migrate(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="instructor"))
        assert _resolver(session_factory, "permissive").get_user_role(user.id) == RoleName.teacher
        assert assignments_for(user.id) == []

    def test_concurrent_migration_creates_one_assignment(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="instructor"))
        resolver = _resolver(session_factory)

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda _: resolver.get_user_role(user.id), range(6)))

        assert results == [RoleName.teacher] * 6
        assert len(assignments_for(user.id, "active")) == 1

    def test_store_failure_degrades_to_none(self, session_factory, seed, institution, caplog):
        user = seed(make_user(institution, primary_role="teacher", role_status="active"))
        resolver = _resolver(session_factory)

        with mock.patch.object(RoleStore, "get_user", side_effect=StoreUnavailableError("connection reset")):
            with caplog.at_level(logging.WARNING, logger="rolekeeper.compatibility"):
                assert resolver.get_user_role(user.id) is None

        assert "[ROLE_COMPATIBILITY]" in caplog.text
        assert "connection reset" in caplog.text

    def test_side_channel_can_be_silenced(self, session_factory, caplog):
        resolver = _resolver(session_factory, log_issues=False)
        with mock.patch.object(RoleStore, "get_user", side_effect=StoreUnavailableError("down")):
            with caplog.at_level(logging.WARNING, logger="rolekeeper.compatibility"):
                assert resolver.get_user_role("u1") is None
        assert "[ROLE_COMPATIBILITY]" not in caplog.text

    def test_cancellation_propagates(self, session_factory):
        resolver = _resolver(session_factory)
        with mock.patch.object(RoleStore, "get_user", side_effect=OperationCancelledError("deadline")):
            with pytest.raises(OperationCancelledError):
                resolver.get_user_role("u1")

    def test_malformed_primary_role_falls_back_in_permissive_mode(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student", primary_role="wizard", role_status="active"))
        assert _resolver(session_factory, "permissive").get_user_role(user.id) == RoleName.student
        assert _resolver(session_factory, "strict").get_user_role(user.id) is None

    def test_failed_migration_still_returns_role(self, session_factory, seed, institution, caplog):
        user = seed(make_user(institution, role="instructor"))
        resolver = _resolver(session_factory)
        with mock.patch.object(RoleStore, "insert_guarded", side_effect=StoreUnavailableError("write failed")):
            with caplog.at_level(logging.WARNING, logger="rolekeeper.compatibility"):
                assert resolver.get_user_role(user.id) == RoleName.teacher
        assert "ensure_migrated" in caplog.text


class TestGetUserRoles:
    def test_distinct_active_roles(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student"))
        seed(
            make_assignment(user, "teacher"),
            make_assignment(user, "department_admin"),
            make_assignment(user, "teacher", department_id="other"),
            make_assignment(user, "system_admin", status="revoked"),
        )
        roles = _resolver(session_factory).get_user_roles(user.id)
        assert sorted(r.value for r in roles) == ["department_admin", "teacher"]

    def test_legacy_fallback_without_migration(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="faculty"))
        assert _resolver(session_factory).get_user_roles(user.id) == [RoleName.teacher]
        assert assignments_for(user.id) == []

    def test_strict_mode_has_no_fallback(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="faculty"))
        assert _resolver(session_factory, "strict").get_user_roles(user.id) == []

    def test_has_role(self, session_factory, seed, institution):
        user = seed(make_user(institution))
        seed(make_assignment(user, "teacher"))
        resolver = _resolver(session_factory)
        assert resolver.has_role(user.id, RoleName.teacher)
        assert resolver.has_role(user.id, "teacher")
        assert not resolver.has_role(user.id, "student")
        assert not resolver.has_role(user.id, "not-a-role")

    def test_store_failure_degrades_to_empty(self, session_factory):
        resolver = _resolver(session_factory)
        with mock.patch.object(RoleStore, "get_user", side_effect=StoreUnavailableError("down")):
            assert resolver.get_user_roles("u1") == []


class TestCompatibilityStatus:
    def test_legacy_only_user_needs_migration(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="instructor"))
        status = _resolver(session_factory).get_compatibility_status(user.id)
        assert status.has_legacy_role_data
        assert not status.has_new_role_data
        assert status.needs_migration
        assert status.compatibility_mode == "hybrid"

    def test_migrated_user_does_not_need_migration(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="instructor", primary_role="teacher", role_status="active"))
        status = _resolver(session_factory, "strict").get_compatibility_status(user.id)
        assert status.has_new_role_data
        assert not status.needs_migration
        assert status.compatibility_mode == "strict"


class TestEnsureMigrated:
    def test_second_call_is_a_no_op(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="student"))
        resolver = _resolver(session_factory, "permissive")

        first = resolver.ensure_migrated(user.id)
        second = resolver.ensure_migrated(user.id)

        assert first.did_migrate is True
        assert second.did_migrate is False
        assert second.assignment.id == first.assignment.id
        assert len(assignments_for(user.id)) == 1

    def test_lost_race_returns_winner(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student"))
        winner = make_assignment(user, "student")
        winner.guard()
        seed(winner)

        resolver = _resolver(session_factory)
        with mock.patch.object(RoleStore, "find_active_assignment", return_value=None):
            outcome = resolver.ensure_migrated(user.id)

        assert outcome.did_migrate is False
        assert outcome.assignment.id == winner.id

    def test_unmappable_role_is_not_migrated(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="guest"))
        outcome = _resolver(session_factory).ensure_migrated(user.id)
        assert outcome.assignment is None
        assert outcome.did_migrate is False

    def test_existing_assignment_syncs_primary_role(self, session_factory, seed, institution, get_user):
        user = seed(make_user(institution, role="instructor"))
        seed(make_assignment(user, "teacher"))

        outcome = _resolver(session_factory).ensure_migrated(user.id)

        assert outcome.did_migrate is False
        assert get_user(user.id).primary_role == "teacher"

    def test_force_migrate_requires_legacy_support(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student"))
        with pytest.raises(ConfigurationError):
            _resolver(session_factory, legacy_support_enabled=False).force_migrate_user(user.id)

    def test_force_migrate_works_in_strict_mode(self, session_factory, seed, institution):
        user = seed(make_user(institution, role="student"))
        assert _resolver(session_factory, "strict").force_migrate_user(user.id) is True


class TestCompatibilityAssignments:
    def test_active_assignments_are_returned(self, session_factory, seed, institution):
        user = seed(make_user(institution))
        assignment = seed(make_assignment(user, "teacher"))
        result = _resolver(session_factory).get_user_role_assignments(user.id)
        assert [a.id for a in result] == [assignment.id]

    def test_legacy_user_gets_unsaved_compatibility_assignment(self, session_factory, seed, institution, assignments_for):
        user = seed(make_user(institution, role="admin"))
        result = _resolver(session_factory).get_user_role_assignments(user.id)
        assert len(result) == 1
        assert result[0].role == "institution_admin"
        assert result[0].id == f"compat_{user.id}"
        assert result[0].meta.model_extra["compatibility"] is True
        assert assignments_for(user.id) == []


class TestRemigrationAfterOutsideExpiry:
    def test_expired_migrated_row_does_not_block_remigration(
        self, session_factory, seed, fetch, institution, get_user, assignments_for, update_status
    ):
        user = seed(make_user(institution, role="instructor"))
        resolver = _resolver(session_factory)
        first = resolver.ensure_migrated(user.id)

        update_status(first.assignment.id, "expired")

        def _clear_primary(session):
            row = session.get(User, user.id)
            row.primary_role = None
            row.role_status = None
            session.commit()

        fetch(_clear_primary)

        assert resolver.get_user_role(user.id) == RoleName.teacher

        active = assignments_for(user.id, status="active")
        assert len(active) == 1
        assert active[0].id != first.assignment.id
        assert get_user(user.id).primary_role == "teacher"
        assert get_user(user.id).role_status == "active"

    def test_bulk_run_counts_the_user_as_migrated(self, session_factory, seed, fetch, institution, update_status):
        user = seed(make_user(institution, role="student"))
        resolver = _resolver(session_factory)
        first = resolver.ensure_migrated(user.id)
        update_status(first.assignment.id, "revoked")

        def _clear_primary(session):
            session.get(User, user.id).primary_role = None
            session.commit()

        fetch(_clear_primary)

        report = RoleMigrationService(session_factory, resolver=resolver).migrate(create_snapshot=False)
        assert report.migrated_users == 1
        assert report.skipped_users == 0
