"""Build history database.

Engine and session helpers for the database holding build records,
dependency layer rows and artifacts. Matrix builds share one engine and
open a session per worker thread, so SQLite connections are created
thread-agnostic and wait on a locked database instead of failing.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from imagepipe.config import get_settings

# Seconds a writer waits for another thread's transaction to finish
SQLITE_BUSY_TIMEOUT = 30.0


class Base(DeclarativeBase):
    """Declarative base for build history models."""


def sqlite_path(db_url: str) -> Path | None:
    """Return the database file behind a SQLite URL.

    Args:
        db_url: SQLAlchemy database URL.

    Returns:
        File path, or None for non-SQLite and in-memory databases.
    """
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


def get_engine(db_url: str | None = None) -> Any:
    """Create the engine for the build history database.

    Args:
        db_url: Database URL. Defaults to the configured db_url.

    Returns:
        SQLAlchemy Engine. For a SQLite file the parent directory is
        created first.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if make_url(db_url).get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        path = sqlite_path(db_url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Create a session factory.

    Objects stay readable after commit; builds commit per stage and keep
    using their record afterwards.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Session scope that commits on success and rolls back on error."""
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the build history tables if they do not exist."""
    # Registers the models on Base.metadata
    from imagepipe.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "SQLITE_BUSY_TIMEOUT",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "sqlite_path",
]
