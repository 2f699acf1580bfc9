"""Create the worker's tables in the configured database."""

from __future__ import annotations

import structlog

from ..core.config import get_settings
from ..core.logging import configure_logging
from . import create_db_engine, create_tables

LOGGER = structlog.get_logger(__name__)


def init_db() -> None:
    settings = get_settings()
    engine = create_db_engine(settings.database_url)
    create_tables(engine)
    LOGGER.info("tables_created", url=settings.database_url)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    init_db()


if __name__ == "__main__":
    main()
