"""SQLAlchemy engine, session scope and schema bootstrap for the canonical store."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from setlist_sync.config import load_config

_logger = logging.getLogger(__name__)

# Seconds a writer waits on a locked sqlite file; several queue workers share it.
_SQLITE_LOCK_WAIT_S = 30

_ASYNC_SQLITE_DRIVERS = {"sqlite", "sqlite+aiosqlite"}


class Base(DeclarativeBase):
    pass


metadata = Base.metadata


@dataclass
class _Database:
    url: str | None = None
    engine: Engine | None = None
    factory: sessionmaker[Session] | None = None
    bootstrapping: bool = False

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
        self.url = None
        self.engine = None
        self.factory = None


_state = _Database()


def sync_driver_url(raw: str) -> URL:
    url = make_url(raw)
    if url.drivername.lower() in _ASYNC_SQLITE_DRIVERS:
        return url.set(drivername="sqlite+pysqlite")
    return url


def _sqlite_file(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite") or url.database in {None, "", ":memory:"}:
        return None
    return Path(url.database).expanduser().resolve()


def _apply_sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={_SQLITE_LOCK_WAIT_S * 1000}")
    finally:
        cursor.close()


def _apply_wal(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def _open_engine(url: URL) -> Engine:
    if not url.drivername.startswith("sqlite"):
        return create_engine(url, future=True, pool_pre_ping=True)

    engine = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": _SQLITE_LOCK_WAIT_S},
    )
    event.listen(engine, "connect", _apply_sqlite_pragmas)
    if _sqlite_file(url) is not None:
        event.listen(engine, "connect", _apply_wal)
    return engine


def _current(*, bootstrap: bool = True) -> sessionmaker[Session]:
    url = sync_driver_url(load_config().database.url)
    rendered = url.render_as_string(hide_password=False)

    if _state.factory is None or _state.url != rendered:
        _state.close()
        _state.engine = _open_engine(url)
        _state.url = rendered
        _state.factory = sessionmaker(bind=_state.engine, autoflush=False, expire_on_commit=False)
        if bootstrap and not _state.bootstrapping:
            init_db()

    return _state.factory


def get_session() -> Session:
    return _current()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on any error."""

    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create missing tables for the canonical entities, votes and the job queue."""

    if _state.bootstrapping:
        return

    _state.bootstrapping = True
    try:
        path = _sqlite_file(sync_driver_url(load_config().database.url))
        fresh_file = path is not None and not path.exists()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

        _current(bootstrap=False)
        from setlist_sync import models  # noqa: F401

        metadata.create_all(bind=_state.engine, checkfirst=True)
        if fresh_file:
            _logger.info(
                "Created sqlite store",
                extra={"event": "database.bootstrap", "path": str(path)},
            )
    finally:
        _state.bootstrapping = False


def reset_engine_for_tests() -> None:
    """Drop the cached engine so the next session follows the current DATABASE_URL."""

    _state.close()
    _state.bootstrapping = False


__all__ = [
    "Base",
    "get_session",
    "init_db",
    "metadata",
    "reset_engine_for_tests",
    "session_scope",
    "sync_driver_url",
]
