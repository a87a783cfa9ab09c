"""Transport-independent entry point for reading, mutating and watching sessions.

Mutations of one session run one at a time: the session is read, the engine
computes the next state, the store persists it and subscribers are notified,
all while holding that session's lock. Different sessions never wait on each
other. Subscriber channels only enqueue, so a slow client cannot hold the lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from billsplit.backend import engine
from billsplit.backend.errors import SessionNotFound, TransientStoreError
from billsplit.backend.models import NewItem, Participant, Session, VerificationIssue
from billsplit.backend.notifier import SessionNotifier, SubscriberChannel, SubscriptionHandle
from billsplit.backend.state import build_snapshot
from billsplit.backend.store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionLocks:
    """One asyncio lock per session id, discarded once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._waiters[session_id] = self._waiters.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[session_id] -= 1
            if self._waiters[session_id] == 0:
                del self._waiters[session_id]
                del self._locks[session_id]


class SessionGateway:
    def __init__(
        self,
        store: SessionStore,
        notifier: SessionNotifier | None = None,
        store_timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.notifier = notifier if notifier is not None else SessionNotifier()
        self.store_timeout_seconds = store_timeout_seconds
        self._locks = SessionLocks()

    async def create_session(self, image_url: str | None = None) -> Session:
        session = await self._call_store("create", self.store.create, image_url)
        logger.info("Created session %s", session.id)
        return session

    async def get_session(self, session_id: str) -> Session:
        session = await self._call_store("get", self.store.get, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def get_snapshot(self, session_id: str) -> dict[str, Any]:
        return build_snapshot(await self.get_session(session_id))

    async def delete_session(self, session_id: str) -> None:
        async with self._locks.hold(session_id):
            deleted = await self._write_store(self.store.delete, session_id)
            if not deleted:
                raise SessionNotFound(session_id)
            await self.notifier.close_session(session_id)
        logger.info("Deleted session %s", session_id)

    async def expire_sessions(self) -> list[str]:
        expired = await self._call_store("purge", self.store.purge_expired)
        for session_id in expired:
            async with self._locks.hold(session_id):
                await self.notifier.close_session(session_id)
            logger.info("Session %s expired", session_id)
        return expired

    async def add_items(self, session_id: str, items: list[NewItem]) -> Session:
        return await self._mutate(session_id, lambda session: engine.add_items(session, items))

    async def join_session(self, session_id: str, name: str) -> tuple[Participant, Session]:
        joined: list[Participant] = []

        def transition(session: Session) -> Session:
            participant, updated = engine.join_session(session, name)
            joined.append(participant)
            return updated

        session = await self._mutate(session_id, transition)
        return joined[0], session

    async def assign_quantity(self, session_id: str, item_id: str, participant_id: str, quantity: float) -> Session:
        return await self._mutate(
            session_id,
            lambda session: engine.assign_quantity(session, item_id, participant_id, quantity),
        )

    async def update_item(
        self,
        session_id: str,
        item_id: str,
        name: str | None = None,
        price: float | None = None,
        quantity: float | None = None,
    ) -> Session:
        return await self._mutate(
            session_id,
            lambda session: engine.update_item(session, item_id, name=name, price=price, quantity=quantity),
        )

    async def apply_suggested_fix(self, session_id: str, item_id: str) -> Session:
        return await self._mutate(session_id, lambda session: engine.apply_suggested_fix(session, item_id))

    async def dismiss_issue(self, session_id: str, item_id: str) -> Session:
        return await self._mutate(session_id, lambda session: engine.dismiss_issue(session, item_id))

    async def set_verification_issue(
        self, session_id: str, item_id: str, issue: VerificationIssue | None
    ) -> Session:
        return await self._mutate(session_id, lambda session: engine.set_verification_issue(session, item_id, issue))

    async def subscribe(self, session_id: str, channel: SubscriberChannel) -> SubscriptionHandle:
        """Register a channel and deliver the current snapshot as its first message."""
        async with self._locks.hold(session_id):
            session = await self.get_session(session_id)
            handle = self.notifier.subscribe(session_id, channel)
            await self.notifier.send_initial(handle, build_snapshot(session))
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.notifier.unsubscribe(handle.session_id, handle)

    async def _mutate(self, session_id: str, transition: Callable[[Session], Session]) -> Session:
        async with self._locks.hold(session_id):
            current = await self.get_session(session_id)
            updated = transition(current)
            saved = await self._write_store(self.store.replace, session_id, updated)
            if saved is None:
                raise SessionNotFound(session_id)
            await self.notifier.notify(session_id, build_snapshot(saved))
            return saved

    async def _call_store(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.store_timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Session store %s timed out after %.1fs", operation, self.store_timeout_seconds)
            raise TransientStoreError(operation, "timed out") from exc

    async def _write_store(self, func: Callable[..., T], *args: Any) -> T:
        """Run a store write and wait for its real outcome.

        The store refuses to commit past the deadline, so a write reported as
        failed never lands afterwards.
        """
        deadline = time.monotonic() + self.store_timeout_seconds
        return await asyncio.to_thread(func, *args, deadline)
