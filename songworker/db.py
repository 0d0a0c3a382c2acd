"""Database configuration and helper utilities."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
import logging
from pathlib import Path
from typing import TypeVar

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


metadata = Base.metadata

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionCallable = Callable[[Session], T]
SessionFactory = sessionmaker[Session]


def _synchronous_url(url: URL) -> URL:
    driver = url.drivername.lower()
    if driver in {"sqlite", "sqlite+aiosqlite"}:
        return url.set(drivername="sqlite+pysqlite")
    return url


def _database_file_path(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database
    if not database or database == ":memory:":
        return None
    path = Path(database)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def _enable_sqlite_wal(dbapi_connection, _record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


def build_engine(database_url: str) -> Engine:
    url = _synchronous_url(make_url(database_url))
    path = _database_file_path(url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
    connect_args: dict[str, object] = {}
    if url.drivername.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(url, future=True, connect_args=connect_args)
    if path is not None:
        event.listen(engine, "connect", _enable_sqlite_wal)
    return engine


def create_session_factory(engine: Engine) -> SessionFactory:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope(factory: SessionFactory) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """Create all worker tables that do not exist yet."""

    from songworker import models  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)
    _logger.info("Database schema ready", extra={"event": "database.bootstrap"})


def _call_with_session(func: SessionCallable[T], factory: SessionFactory) -> T:
    with session_scope(factory) as session:
        return func(session)


async def run_session(func: SessionCallable[T], *, factory: SessionFactory) -> T:
    """Execute ``func`` with a database session in a worker thread."""

    return await asyncio.to_thread(_call_with_session, func, factory)


__all__ = [
    "Base",
    "build_engine",
    "create_session_factory",
    "init_db",
    "metadata",
    "run_session",
    "session_scope",
]
