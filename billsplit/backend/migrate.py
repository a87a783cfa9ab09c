"""Create the session table in PostgreSQL."""

from __future__ import annotations

import argparse
import logging

from billsplit.backend.config import load_settings
from billsplit.backend.store import PostgresSessionStore

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Apply the billsplit database schema")
    parser.add_argument("--database-url", default=settings.database_url)
    args = parser.parse_args(argv)
    if not args.database_url:
        raise RuntimeError("BILLSPLIT_DATABASE_URL or --database-url is required for migration")

    logging.basicConfig(level=settings.log_level)
    store = PostgresSessionStore(database_url=args.database_url, timeout_seconds=settings.store_timeout_seconds)
    store.apply_schema()
    logger.info("Session schema applied")


if __name__ == "__main__":
    main()
