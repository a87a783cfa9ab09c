"""Persistence interfaces and implementations for session documents."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from billsplit.backend.errors import TransientStoreError
from billsplit.backend.models import Session
from billsplit.backend.state import build_initial_session, session_from_dict, session_to_dict, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


class SessionStore(Protocol):
    def create(self, image_url: str | None = None) -> Session:
        """Create and persist an empty session."""

    def get(self, session_id: str) -> Session | None:
        """Return the session unless it is missing or expired."""

    def replace(self, session_id: str, session: Session, deadline: float | None = None) -> Session | None:
        """Persist the whole document, bump its version and refresh its TTL.

        Nothing is written once ``time.monotonic()`` has passed ``deadline``.
        """

    def delete(self, session_id: str, deadline: float | None = None) -> bool:
        """Remove a session; return whether it existed."""

    def purge_expired(self) -> list[str]:
        """Drop expired sessions and return their ids."""


def check_deadline(operation: str, deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        logger.warning("Session store %s passed its deadline; nothing was written", operation)
        raise TransientStoreError(operation, "timed out")


@dataclass
class _Entry:
    session: Session
    expires_at: float


@dataclass
class InMemorySessionStore:
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = field(default=time.monotonic)

    def __post_init__(self) -> None:
        self._sessions: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def create(self, image_url: str | None = None) -> Session:
        session = build_initial_session(session_id=str(uuid.uuid4()), image_url=image_url)
        with self._lock:
            self._sessions[session.id] = _Entry(session=session, expires_at=self.clock() + self.ttl_seconds)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            entry = self._live_entry(session_id)
            return entry.session if entry is not None else None

    def replace(self, session_id: str, session: Session, deadline: float | None = None) -> Session | None:
        with self._lock:
            entry = self._live_entry(session_id)
            if entry is None:
                return None
            check_deadline("replace", deadline)
            stored = replace(session, id=session_id, version=entry.session.version + 1, updated_at=utc_now())
            self._sessions[session_id] = _Entry(session=stored, expires_at=self.clock() + self.ttl_seconds)
            return stored

    def delete(self, session_id: str, deadline: float | None = None) -> bool:
        with self._lock:
            check_deadline("delete", deadline)
            return self._sessions.pop(session_id, None) is not None

    def purge_expired(self) -> list[str]:
        now = self.clock()
        with self._lock:
            expired = [session_id for session_id, entry in self._sessions.items() if entry.expires_at <= now]
            for session_id in expired:
                del self._sessions[session_id]
        return expired

    def _live_entry(self, session_id: str) -> _Entry | None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            # Expired sessions stay until purge_expired so their subscribers get closed.
            return None
        return entry


@dataclass
class PostgresSessionStore:
    database_url: str
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    timeout_seconds: float = 5.0

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(
            self.database_url,
            connect_timeout=max(int(self.timeout_seconds), 1),
            options=f"-c statement_timeout={int(self.timeout_seconds * 1000)}",
        )

    @contextmanager
    def _transaction(self, operation: str, deadline: float | None = None) -> Iterator[Any]:
        import psycopg

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    yield cur
                # Raising here leaves the connection block with an error, which rolls back.
                check_deadline(operation, deadline)
                conn.commit()
        except psycopg.OperationalError as exc:
            logger.warning("Session store %s failed: %s", operation, exc)
            raise TransientStoreError(operation, str(exc)) from exc

    def apply_schema(self) -> None:
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._transaction("migrate") as cur:
            cur.execute(schema_sql)

    def _expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.ttl_seconds)

    def create(self, image_url: str | None = None) -> Session:
        session = build_initial_session(session_id=str(uuid.uuid4()), image_url=image_url)
        now = datetime.now(timezone.utc)
        with self._transaction("create") as cur:
            cur.execute(
                """
                INSERT INTO billsplit_sessions (id, version, state_json, created_at, updated_at, expires_at)
                VALUES (%s, %s, %s::jsonb, %s, %s, %s)
                """,
                (
                    session.id,
                    session.version,
                    json.dumps(session_to_dict(session)),
                    now,
                    now,
                    self._expires_at(now),
                ),
            )
        return session

    def get(self, session_id: str) -> Session | None:
        with self._transaction("get") as cur:
            cur.execute(
                """
                SELECT state_json
                FROM billsplit_sessions
                WHERE id = %s
                  AND expires_at > %s
                """,
                (session_id, datetime.now(timezone.utc)),
            )
            row = cur.fetchone()

        if row is None:
            return None
        (state_json,) = row
        payload = state_json if isinstance(state_json, dict) else json.loads(state_json)
        return session_from_dict(payload)

    def replace(self, session_id: str, session: Session, deadline: float | None = None) -> Session | None:
        """Compare-and-set on the version the session was read at."""
        now = datetime.now(timezone.utc)
        stored = replace(session, id=session_id, version=session.version + 1, updated_at=now)
        with self._transaction("replace", deadline) as cur:
            cur.execute(
                """
                UPDATE billsplit_sessions
                SET version = %s, state_json = %s::jsonb, updated_at = %s, expires_at = %s
                WHERE id = %s
                  AND version = %s
                  AND expires_at > %s
                """,
                (
                    stored.version,
                    json.dumps(session_to_dict(stored)),
                    now,
                    self._expires_at(now),
                    session_id,
                    session.version,
                    now,
                ),
            )
            updated = cur.rowcount

        if updated == 1:
            return stored
        if self.get(session_id) is None:
            return None
        raise TransientStoreError("replace", f"session {session_id} was modified concurrently")

    def delete(self, session_id: str, deadline: float | None = None) -> bool:
        with self._transaction("delete", deadline) as cur:
            cur.execute("DELETE FROM billsplit_sessions WHERE id = %s", (session_id,))
            deleted = cur.rowcount
        return deleted > 0

    def purge_expired(self) -> list[str]:
        with self._transaction("purge") as cur:
            cur.execute(
                "DELETE FROM billsplit_sessions WHERE expires_at <= %s RETURNING id",
                (datetime.now(timezone.utc),),
            )
            rows = cur.fetchall()
        return [row[0] for row in rows]


def create_store(
    database_url: str | None,
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
    timeout_seconds: float = 5.0,
) -> SessionStore:
    if database_url:
        return PostgresSessionStore(database_url=database_url, ttl_seconds=ttl_seconds, timeout_seconds=timeout_seconds)
    return InMemorySessionStore(ttl_seconds=ttl_seconds)
