"""Database engine, session factory, and per-dialect connection tuning."""

from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from rolekeeper.core.config import settings

# Session factory; bound lazily so importing services never opens a connection
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT and write locking work on pysqlite.

    Transactions start with BEGIN IMMEDIATE: concurrent writers queue on the
    busy timeout instead of failing on a lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, timeout_seconds: Optional[float] = None, echo: bool = False) -> Engine:
    """Create an engine for ``url`` with driver timeouts derived from settings."""
    timeout = timeout_seconds if timeout_seconds is not None else settings.STORE_TIMEOUT_SECONDS

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout},
            echo=echo,
        )
        _enable_sqlite_transactions(engine)
        return engine

    connect_args = {}
    if url.startswith("mysql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "read_timeout": max(1, int(timeout)),
            "write_timeout": max(1, int(timeout)),
        }
    elif url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }

    return create_engine(
        url,
        connect_args=connect_args,
        pool_size=20,
        max_overflow=40,
        pool_timeout=max(1, int(timeout)),
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine() -> Engine:
    """Return the process-wide engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        SessionLocal.configure(bind=_engine)
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the default session factory bound to the process-wide engine."""
    get_engine()
    return SessionLocal
