"""Shared fixtures: a throwaway file-backed SQLite store per test."""

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

import rolekeeper.models  # noqa: F401  registers tables
from rolekeeper.db.base import Base
from rolekeeper.db.session import build_engine
from rolekeeper.models.role_assignment import RoleAssignment
from rolekeeper.models.user import User

from factories import make_institution


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'roles.db'}", timeout_seconds=10)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def seed(session_factory):
    """Persist rows in their own committed transaction and hand them back detached.

    Tests never keep a session open: SQLite write locks are taken at BEGIN.
    """

    def _seed(*objects):
        with session_factory() as session:
            session.add_all(objects)
            session.commit()
        return objects[0] if len(objects) == 1 else objects

    return _seed


@pytest.fixture
def fetch(session_factory):
    """Run ``fn(session)`` in a short-lived session and return its result."""

    def _fetch(fn):
        with session_factory() as session:
            return fn(session)

    return _fetch


@pytest.fixture
def get_user(fetch):
    return lambda user_id: fetch(lambda s: s.get(User, user_id))


@pytest.fixture
def assignments_for(fetch):
    def _assignments(user_id, status=None):
        query = select(RoleAssignment).where(RoleAssignment.user_id == user_id)
        if status:
            query = query.where(RoleAssignment.status == status)
        return fetch(lambda s: list(s.scalars(query.order_by(RoleAssignment.assigned_at))))

    return _assignments


@pytest.fixture
def institution(seed):
    return seed(make_institution())


@pytest.fixture
def update_status(session_factory):
    """Change an assignment's status with a plain UPDATE, the way outside tooling does."""

    def _update(assignment_id, status):
        with session_factory() as session:
            session.execute(update(RoleAssignment).where(RoleAssignment.id == assignment_id).values(status=status))
            session.commit()

    return _update
