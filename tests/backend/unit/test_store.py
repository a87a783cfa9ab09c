import json
import time
from dataclasses import replace

import pytest

from billsplit.backend.errors import TransientStoreError
from billsplit.backend.state import build_initial_session, session_to_dict
from billsplit.backend.store import InMemorySessionStore, PostgresSessionStore, create_store


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_create_store_returns_postgres_store_when_database_url_present() -> None:
    store = create_store(database_url="postgresql://local", ttl_seconds=60)

    assert isinstance(store, PostgresSessionStore)
    assert store.ttl_seconds == 60


def test_create_store_returns_in_memory_store_when_database_url_missing() -> None:
    store = create_store(database_url=None)

    assert isinstance(store, InMemorySessionStore)


def test_in_memory_store_create_get_and_replace_bumps_version() -> None:
    store = InMemorySessionStore()
    created = store.create(image_url="receipt.jpg")

    fetched = store.get(created.id)
    assert fetched == created

    saved = store.replace(created.id, replace(created, image_url="other.jpg"))

    assert saved is not None
    assert saved.version == 2
    assert saved.image_url == "other.jpg"
    assert store.get(created.id) == saved


def test_in_memory_store_returns_none_for_unknown_session() -> None:
    store = InMemorySessionStore()

    assert store.get("missing") is None
    assert store.replace("missing", build_initial_session("missing")) is None
    assert store.delete("missing") is False


def test_in_memory_store_expires_after_ttl_from_last_write() -> None:
    clock = _Clock()
    store = InMemorySessionStore(ttl_seconds=100, clock=clock)
    created = store.create()

    clock.now += 90
    assert store.replace(created.id, created) is not None

    clock.now += 90
    assert store.get(created.id) is not None

    clock.now += 20
    assert store.get(created.id) is None
    assert store.replace(created.id, created) is None
    assert store.purge_expired() == [created.id]
    assert store.purge_expired() == []


def test_in_memory_store_delete_removes_session() -> None:
    store = InMemorySessionStore()
    created = store.create()

    assert store.delete(created.id) is True
    assert store.get(created.id) is None


class _FakeCursor:
    def __init__(self, rows: list[tuple] | None = None, rowcount: int = 1) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.rows = rows or []
        self.rowcount = rowcount

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.commands.append((sql, params))

    def fetchone(self) -> tuple | None:
        return self.rows[0] if self.rows else None

    def fetchall(self) -> list[tuple]:
        return self.rows

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, cursor: _FakeCursor) -> None:
        self.cursor_instance = cursor
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresStoreWithFakeConnection(PostgresSessionStore):
    def __init__(self, cursor: _FakeCursor | None = None) -> None:
        super().__init__(database_url="postgresql://local", ttl_seconds=60)
        self.fake_connection = _FakeConnection(cursor or _FakeCursor())

    def _connect(self) -> _FakeConnection:
        return self.fake_connection


def test_postgres_create_inserts_session_row() -> None:
    store = _PostgresStoreWithFakeConnection()

    session = store.create(image_url="receipt.jpg")

    commands = store.fake_connection.cursor_instance.commands
    assert store.fake_connection.committed is True
    assert len(commands) == 1
    assert "INSERT INTO billsplit_sessions" in commands[0][0]
    assert commands[0][1][0] == session.id
    assert json.loads(commands[0][1][2])["imageUrl"] == "receipt.jpg"


def test_postgres_get_decodes_state_json() -> None:
    session = build_initial_session("sess-1")
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rows=[(session_to_dict(session),)]))

    fetched = store.get("sess-1")

    assert fetched == session
    assert "expires_at >" in store.fake_connection.cursor_instance.commands[0][0]


def test_postgres_get_returns_none_when_row_missing() -> None:
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rows=[]))

    assert store.get("sess-1") is None


def test_postgres_replace_is_compare_and_set_on_version() -> None:
    session = build_initial_session("sess-1")
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rowcount=1))

    saved = store.replace("sess-1", session)

    sql, params = store.fake_connection.cursor_instance.commands[0]
    assert saved is not None
    assert saved.version == 2
    assert "UPDATE billsplit_sessions" in sql
    assert "AND version = %s" in sql
    assert params[0] == 2
    assert params[5] == 1


def test_postgres_replace_reports_lost_race_as_transient() -> None:
    session = build_initial_session("sess-1")
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rows=[(json.dumps(session_to_dict(session)),)], rowcount=0))

    with pytest.raises(TransientStoreError):
        store.replace("sess-1", session)


def test_postgres_replace_returns_none_for_missing_session() -> None:
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rows=[], rowcount=0))

    assert store.replace("sess-1", build_initial_session("sess-1")) is None


def test_postgres_purge_expired_returns_deleted_ids() -> None:
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rows=[("a",), ("b",)]))

    assert store.purge_expired() == ["a", "b"]
    assert "RETURNING id" in store.fake_connection.cursor_instance.commands[0][0]


def test_postgres_connection_failure_is_transient() -> None:
    psycopg = pytest.importorskip("psycopg")

    class _BrokenStore(PostgresSessionStore):
        def _connect(self):
            raise psycopg.OperationalError("connection refused")

    store = _BrokenStore(database_url="postgresql://local")

    with pytest.raises(TransientStoreError):
        store.get("sess-1")


def test_in_memory_store_refuses_writes_past_their_deadline() -> None:
    store = InMemorySessionStore()
    session = store.create()
    expired_deadline = time.monotonic() - 1

    with pytest.raises(TransientStoreError):
        store.replace(session.id, replace(session, image_url="late.jpg"), expired_deadline)
    with pytest.raises(TransientStoreError):
        store.delete(session.id, expired_deadline)

    assert store.get(session.id) == session


def test_postgres_replace_past_deadline_is_not_committed() -> None:
    pytest.importorskip("psycopg")
    session = build_initial_session("sess-1")
    store = _PostgresStoreWithFakeConnection(_FakeCursor(rowcount=1))

    with pytest.raises(TransientStoreError):
        store.replace("sess-1", session, time.monotonic() - 1)

    assert store.fake_connection.committed is False
