"""Run-record database.

Each ``build run`` stores one BuildRecord row. The database is local state
that lives beside the dependency cache, so a SQLite file is the default and
its directory is created on first use.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stagebuild.config import get_settings

SQLITE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Declarative base for run-record tables."""


def _sqlite_file(db_url: str) -> Path | None:
    if not db_url.startswith(SQLITE_PREFIX):
        return None
    path = db_url.removeprefix(SQLITE_PREFIX)
    if not path or path == ":memory:":
        return None
    return Path(path)


def get_engine(db_url: str | None = None) -> Engine:
    """Return an engine for ``db_url``, defaulting to ``Settings.db_url``."""
    url = db_url or get_settings().db_url
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    db_file = _sqlite_file(url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the run-record tables that do not exist yet."""
    # Registers BuildRecord on Base.metadata
    from stagebuild.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def open_run_store(db_url: str | None = None) -> sessionmaker[Session]:
    """Prepare the run-record database and return a session factory."""
    engine = get_engine(db_url)
    create_all_tables(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Iterator[Session]:
    """Session scope that commits on success and rolls back on error."""
    session = (session_factory or open_run_store())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "open_run_store",
]
