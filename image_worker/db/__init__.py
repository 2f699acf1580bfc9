"""Database session management utilities."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..models.base import Base
from .session import create_db_engine, create_session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope for background workers."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create every table known to the ORM metadata."""

    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "create_tables",
    "session_scope",
]
