"""Backend package for collaborative bill splitting."""

from .config import BackendSettings, load_settings
from .errors import (
    BillSplitError,
    ItemNotFound,
    NotFoundError,
    ParticipantNotFound,
    SessionNotFound,
    TransientStoreError,
    ValidationError,
)
from .gateway import SessionGateway
from .notifier import ChannelClosed, QueueChannel, SessionNotifier
from .state import build_initial_session, build_snapshot
from .store import InMemorySessionStore, PostgresSessionStore, SessionStore, create_store

__all__ = [
    "BackendSettings",
    "BillSplitError",
    "build_initial_session",
    "build_snapshot",
    "ChannelClosed",
    "create_store",
    "InMemorySessionStore",
    "ItemNotFound",
    "load_settings",
    "NotFoundError",
    "ParticipantNotFound",
    "PostgresSessionStore",
    "QueueChannel",
    "SessionGateway",
    "SessionNotFound",
    "SessionNotifier",
    "SessionStore",
    "TransientStoreError",
    "ValidationError",
]
