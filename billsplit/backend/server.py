"""Command line entry point serving the API with uvicorn."""

from __future__ import annotations

import argparse
import logging

import uvicorn

from billsplit.backend.config import BackendSettings, load_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(settings: BackendSettings, argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bill Split session server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main(argv: list[str] | None = None) -> int:
    settings = load_settings()
    args = parse_args(settings, argv)
    configure_logging(settings.log_level)
    logging.getLogger(__name__).info(
        "Starting session server on %s:%d (%s store)",
        args.host,
        args.port,
        "postgres" if settings.database_url else "in-memory",
    )
    uvicorn.run(
        "billsplit.backend.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
