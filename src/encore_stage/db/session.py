"""Database session configuration."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from encore_stage.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import encore_stage.models  # noqa: E402,F401


# Connection execution options for transactions that will write.
WRITE_TRANSACTION_OPTIONS = {"sqlite_begin_immediate": True}


def _configure_sqlite(engine: Engine) -> None:
    """Make SQLite behave like a row-locking database for concurrent voters.

    pysqlite defers BEGIN until the first write, which lets two writers both
    take a shared lock and then deadlock on upgrade. Write transactions opened
    with :data:`WRITE_TRANSACTION_OPTIONS` emit BEGIN IMMEDIATE so writers
    queue on the busy timeout instead; reads keep a plain BEGIN and, under
    WAL, never block or get blocked by a writer.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        if conn.get_execution_options().get("sqlite_begin_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def begin_write(session: Session) -> None:
    """Bind ``session``'s open transaction to a connection that holds the write lock.

    Must be the first thing run inside ``session.begin()``. A no-op for
    databases with row-level locking.
    """
    session.connection(execution_options=WRITE_TRANSACTION_OPTIONS)


def create_db_engine(url: str, *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create an engine for ``url`` with dialect-specific tuning applied."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout_seconds)
        engine = create_engine(url, echo=echo, connect_args=connect_args, **kwargs)
        _configure_sqlite(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, echo=echo, **kwargs)


engine = create_db_engine(settings.database_url_sync, echo=settings.sql_debug)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind: Engine | None = None) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind: Engine | None = None) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=bind or engine)
