#!/usr/bin/env python3
"""Container bootstrap: wait for the database, then `alembic upgrade head`.

Exits non-zero when the database never comes up or a migration fails, so the
API and the worker never start on an unknown schema.
"""
import logging
import os
import sys
import time

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

load_dotenv()

from core.database import check_db_connection  # noqa: E402
from core.logging import setup_logging  # noqa: E402

logger = logging.getLogger("run_migrations")

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini")


def wait_for_database(attempts: int = 30, delay_s: float = 1.0) -> bool:
    for attempt in range(1, attempts + 1):
        if check_db_connection():
            return True
        logger.info(f"Database unavailable, retrying ({attempt}/{attempts})")
        time.sleep(delay_s)
    return False


def main() -> int:
    setup_logging()
    if not wait_for_database(attempts=int(os.getenv("DB_WAIT_ATTEMPTS", "30"))):
        logger.error("Database did not become ready; not migrating")
        return 1

    try:
        command.upgrade(Config(ALEMBIC_INI), "head")
    except Exception:
        logger.exception("Alembic upgrade failed")
        return 1
    logger.info("Schema is at head")
    return 0


if __name__ == "__main__":
    sys.exit(main())
