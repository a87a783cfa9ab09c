"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    host: str
    port: int
    session_ttl_seconds: float
    store_timeout_seconds: float
    send_timeout_seconds: float
    subscriber_queue_size: int
    sweep_interval_seconds: float
    log_level: str


def load_settings() -> BackendSettings:
    return BackendSettings(
        database_url=os.getenv("BILLSPLIT_DATABASE_URL") or None,
        host=os.getenv("BILLSPLIT_HOST", "127.0.0.1"),
        port=int(os.getenv("BILLSPLIT_PORT", "8000")),
        session_ttl_seconds=float(os.getenv("BILLSPLIT_SESSION_TTL_SECONDS", "86400")),
        store_timeout_seconds=float(os.getenv("BILLSPLIT_STORE_TIMEOUT_SECONDS", "5")),
        send_timeout_seconds=float(os.getenv("BILLSPLIT_SEND_TIMEOUT_SECONDS", "5")),
        subscriber_queue_size=int(os.getenv("BILLSPLIT_SUBSCRIBER_QUEUE_SIZE", "64")),
        sweep_interval_seconds=float(os.getenv("BILLSPLIT_SWEEP_INTERVAL_SECONDS", "60")),
        log_level=os.getenv("BILLSPLIT_LOG_LEVEL", "INFO").upper(),
    )
