"""
Live message feed.

A subscription yields complete snapshots of the newest N messages
(oldest first). The first snapshot is delivered immediately and a new one
after every committed store change. Snapshots are not diffs: each one
replaces the previous one, and changes that land while a consumer is busy
are coalesced into the next snapshot.

Without an identity a subscription yields a single empty snapshot and then
stays open until cancelled.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.identity import Identity
from app.receipts import to_response
from app.schemas import FeedSnapshot
from app.storage import ChangeNotifier, SessionLocal, query_recent, store_changes

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[FeedSnapshot], Union[None, Awaitable[None]]]


class FeedSubscription:
    """
    Async iterator of FeedSnapshot objects for one subscriber.

    Must be created on the event loop that will consume it. cancel() may be
    called at any time; no snapshot is returned after it, including one
    that was being loaded.
    """

    def __init__(self, feed: "MessageFeed", identity: Optional[Identity]):
        self._feed = feed
        self._identity = identity
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._cancelled = False
        self._delivered = 0
        self._unsubscribe = None
        self.task: Optional[asyncio.Task] = None
        if identity is not None:
            self._unsubscribe = feed.notifier.subscribe(self._on_store_change)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def delivered(self) -> int:
        """Number of snapshots returned so far."""
        return self._delivered

    def _on_store_change(self) -> None:
        # Called on whichever thread committed the change
        if self._cancelled:
            return
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError as e:
            logger.debug(f"Feed event loop closed, dropping change notification: {e}")

    def cancel(self) -> None:
        """Stop the subscription. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._unsubscribe is not None:
            self._unsubscribe()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wakeup.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)
        logger.debug(f"Feed subscription cancelled after {self._delivered} snapshots")

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedSnapshot:
        if self._cancelled:
            raise StopAsyncIteration

        if self._identity is None:
            if self._delivered == 0:
                self._delivered += 1
                return FeedSnapshot(messages=[], limit=self._feed.limit)
            # Only cancel() sets the event for anonymous subscriptions
            await self._wakeup.wait()
            raise StopAsyncIteration

        if self._delivered > 0:
            await self._wakeup.wait()
        # Cleared before loading so a change during the load triggers another snapshot
        self._wakeup.clear()
        if self._cancelled:
            raise StopAsyncIteration

        snapshot = await run_in_threadpool(self._feed.load_snapshot, self._identity.user_id)
        if self._cancelled:
            raise StopAsyncIteration
        self._delivered += 1
        return snapshot


class MessageFeed:
    """Factory for feed subscriptions over the message store."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: ChangeNotifier = store_changes,
        limit: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.limit = limit or settings.FEED_LIMIT

    def load_snapshot(self, viewer_id: Optional[str]) -> FeedSnapshot:
        """Read the current window from the store (blocking)."""
        with self.session_factory() as db:
            messages = [to_response(message, viewer_id) for message in query_recent(db, self.limit)]
        logger.debug(f"Loaded feed snapshot with {len(messages)} messages")
        return FeedSnapshot(messages=messages, limit=self.limit)

    def subscribe(self, identity: Optional[Identity]) -> FeedSubscription:
        """
        Start a new subscription. Calling this again after cancelling
        restarts the feed from the current state.
        """
        logger.info(f"Feed subscription for {identity.user_id if identity else 'anonymous'}")
        return FeedSubscription(self, identity)

    def listen(self, identity: Optional[Identity], callback: SnapshotCallback) -> FeedSubscription:
        """
        Push-style subscription: `callback` is invoked with every snapshot
        from a background task until the returned subscription is cancelled.
        The callback may be a coroutine function.

        A callback that raises ends the subscription; the error is logged.
        """
        subscription = self.subscribe(identity)

        async def pump() -> None:
            try:
                async for snapshot in subscription:
                    if subscription.cancelled:
                        break
                    result = callback(snapshot)
                    if inspect.isawaitable(result):
                        await result
            except Exception as e:
                logger.error(f"Feed callback failed, cancelling subscription: {e}")
            finally:
                subscription.cancel()

        subscription.task = asyncio.create_task(pump())
        return subscription
