"""Named advisory lock serializing rollback operations."""

import logging
import threading
import time
import zlib
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rolekeeper.core.exceptions import TransactionError

logger = logging.getLogger("rolekeeper.locks")

_PG_POLL_SECONDS = 0.1


class AdvisoryLock:
    """Re-entrant, process-wide and (on MySQL/PostgreSQL) store-wide named lock.

    The store lock lives on a dedicated session that stays open while the
    lock is held. SQLite has no advisory locks; there the in-process lock is
    the whole critical section.
    """

    _registry: Dict[str, threading.RLock] = {}
    _registry_guard = threading.Lock()
    _held = threading.local()

    def __init__(self, name: str, session_factory: sessionmaker, timeout_seconds: float):
        self.name = name
        self.session_factory = session_factory
        self.timeout = timeout_seconds

    @property
    def _process_lock(self) -> threading.RLock:
        with self._registry_guard:
            return self._registry.setdefault(self.name, threading.RLock())

    def _state(self) -> dict:
        if not hasattr(self._held, "locks"):
            self._held.locks = {}
        return self._held.locks

    @property
    def is_held(self) -> bool:
        return self.name in self._state()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def acquire(self) -> None:
        state = self._state()
        if self.name in state:
            state[self.name]["depth"] += 1
            return

        deadline = time.monotonic() + self.timeout
        lock = self._process_lock
        if not lock.acquire(timeout=self.timeout):
            raise TransactionError(f"Could not acquire rollback lock '{self.name}' within {self.timeout}s")
        try:
            session = self._acquire_store_lock(max(0.0, deadline - time.monotonic()))
        except Exception:
            lock.release()
            raise
        state[self.name] = {"depth": 1, "session": session}
        logger.debug("Acquired rollback lock %s", self.name)

    def release(self) -> None:
        state = self._state()
        entry = state.get(self.name)
        if entry is None:
            return
        entry["depth"] -= 1
        if entry["depth"] > 0:
            return
        del state[self.name]
        try:
            self._release_store_lock(entry["session"])
        finally:
            self._process_lock.release()
            logger.debug("Released rollback lock %s", self.name)

    # ---- Store-level lock ----

    @property
    def _pg_key(self) -> int:
        return zlib.crc32(self.name.encode("utf-8"))

    def _acquire_store_lock(self, timeout: float) -> Optional[Session]:
        session = self.session_factory()
        dialect = session.get_bind().dialect.name
        if dialect not in ("mysql", "postgresql"):
            session.close()
            return None

        try:
            if dialect == "mysql":
                acquired = session.execute(
                    text("SELECT GET_LOCK(:name, :timeout)"),
                    {"name": self.name, "timeout": max(0, int(timeout))},
                ).scalar()
            else:
                deadline = time.monotonic() + timeout
                while True:
                    acquired = session.execute(
                        text("SELECT pg_try_advisory_lock(:key)"), {"key": self._pg_key}
                    ).scalar()
                    if acquired or time.monotonic() >= deadline:
                        break
                    time.sleep(_PG_POLL_SECONDS)
        except SQLAlchemyError as e:
            session.close()
            raise TransactionError(f"Rollback lock '{self.name}' could not be requested: {e}") from e

        if not acquired:
            session.close()
            raise TransactionError(f"Could not acquire rollback lock '{self.name}' within {self.timeout}s")
        return session

    def _release_store_lock(self, session: Optional[Session]) -> None:
        if session is None:
            return
        try:
            if session.get_bind().dialect.name == "mysql":
                session.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": self.name})
            else:
                session.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self._pg_key})
        except SQLAlchemyError as e:
            # the server drops the lock with the connection anyway
            logger.error("Failed to release rollback lock %s: %s", self.name, e)
            session.invalidate()
        finally:
            session.close()
