"""
SQLAlchemy engine initialization, session factory management and
transactional scope utilities.

Every mutating engine operation runs inside ``run_in_transaction``: one
session, committed on success and rolled back on any exception, so a
failure never leaves a partially applied change behind.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Optional, TypeVar

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import get_settings

logger = structlog.get_logger()

T = TypeVar("T")

# Module-level engine and session factory
_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite connections are shared across threads and enforce foreign keys;
    in-memory databases use a single static connection so every session
    sees the same schema.
    """
    kwargs = {"echo": echo, "future": True}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        database = make_url(database_url).database
        if not database or database == ":memory:":
            kwargs["poolclass"] = StaticPool
        else:
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def init_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Defaults to ``Settings.database_url``. A second call replaces the first.
    """
    global _engine, _SessionFactory

    settings = get_settings()
    url = database_url or settings.database_url
    _engine = build_engine(url, echo=settings.database_echo if echo is None else echo)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info("Database engine initialized", dialect=_engine.dialect.name)
    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine() first.")
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the session factory for creating sessions.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine() first.")
    return _SessionFactory


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@contextmanager
def session_scope(
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Usage:
        with session_scope() as session:
            session.add(row)
            # Commits on successful exit, rolls back on exception
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("Transaction rolled back", exc_info=True)
        raise
    finally:
        session.close()


def run_in_transaction(
    work: Callable[[Session], T],
    session_factory: Optional[sessionmaker] = None,
    attempts: Optional[int] = None,
) -> T:
    """
    Run ``work`` inside a single transaction.

    Transient ``OperationalError``s (locked database, serialization
    failures) are retried with exponential backoff; domain errors are not.
    """
    max_attempts = attempts or get_settings().transaction_retry_attempts

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
    )
    def _attempt() -> T:
        with session_scope(session_factory) as session:
            return work(session)

    return _attempt()


def create_tables(engine: Optional[Engine] = None) -> None:
    """Create every table declared on the ORM base."""
    from .tables import Base

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Optional[Engine] = None) -> None:
    """Drop every table declared on the ORM base."""
    from .tables import Base

    Base.metadata.drop_all(engine or get_engine())
