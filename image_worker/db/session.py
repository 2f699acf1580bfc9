"""SQLAlchemy engine and session factory configuration."""

from __future__ import annotations

from pathlib import Path

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

LOGGER = structlog.get_logger(__name__)


def _normalize_database_url(raw_url: str) -> URL:
    """Return an absolute :class:`~sqlalchemy.engine.URL` for SQLite databases."""

    url = make_url(raw_url)
    if not url.drivername.startswith("sqlite"):
        return url

    database = url.database or ""
    if database in {"", ":memory:"}:
        return url

    db_path = Path(database).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return url.set(database=str(db_path))


def _enable_sqlite_wal(dbapi_connection, _record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


def create_db_engine(raw_url: str) -> Engine:
    """Create an engine; SQLite connections are shared across worker threads."""

    url = _normalize_database_url(raw_url)
    kwargs: dict[str, object] = {"pool_pre_ping": True, "future": True}
    if url.drivername.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if (url.database or ":memory:") == ":memory:":
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)
    if url.drivername.startswith("sqlite") and url.database not in {None, "", ":memory:"}:
        event.listen(engine, "connect", _enable_sqlite_wal)

    LOGGER.info("database_engine_initialized", url=url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``."""

    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


__all__ = ["create_db_engine", "create_session_factory"]
