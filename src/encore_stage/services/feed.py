"""Live vote-count change feed.

The feed fans out :class:`ChangeEvent` objects to subscribers watching a
setlist. Publishing never waits on subscriber handlers: deliveries run on a
small worker pool, each subscription drains its own bounded inbox on at most one
worker at a time so a stalled handler cannot starve other subscribers, and
a failing handler is logged without affecting other subscribers or the vote
that produced the event.

Delivery is at-least-once and only ordered per song. Every subscription keeps
the highest ``sequence_number`` it has processed for each song and discards
anything older, so reordered or duplicated deliveries are harmless.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import Any

import redis

from encore_stage.core.settings import settings
from encore_stage.services.errors import FeedUnavailableError

# Configure logger for this module
logger = logging.getLogger(__name__)

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "EventStream",
    "RedisChangeFeed",
    "Subscription",
    "get_change_feed",
    "reset_change_feed",
]


@dataclass(frozen=True)
class ChangeEvent:
    """Counter snapshot for one song after a committed vote."""

    collection_id: int
    subject_id: int
    upvotes: int
    downvotes: int
    net_score: int
    sequence_number: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        """Build an event from a decoded wire payload.

        Raises:
            KeyError: If a field is missing.
            ValueError: If a field is not an integer.
        """
        return cls(
            collection_id=int(data["collection_id"]),
            subject_id=int(data["subject_id"]),
            upvotes=int(data["upvotes"]),
            downvotes=int(data["downvotes"]),
            net_score=int(data["net_score"]),
            sequence_number=int(data["sequence_number"]),
        )


EventHandler = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for one subscriber of one setlist.

    Pending events wait in a bounded inbox that at most one feed worker drains
    at a time, so a slow handler only ever holds up its own events. When the
    inbox is full the oldest pending event is dropped.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        collection_id: int,
        handler: EventHandler,
        *,
        inbox_size: int,
    ) -> None:
        self.collection_id = collection_id
        self._feed = feed
        self._handler = handler
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._last_seen: dict[int, int] = {}
        self._inbox: deque[ChangeEvent] = deque(maxlen=max(1, inbox_size))
        self._inbox_lock = threading.Lock()
        self._draining = False

    def enqueue(self, event: ChangeEvent) -> bool:
        """Queue ``event`` for delivery.

        Returns:
            True if the caller must schedule :meth:`drain_inbox`, False if a
            drain is already running or the subscription is closed.
        """
        with self._inbox_lock:
            if self._closed.is_set():
                return False
            if len(self._inbox) == self._inbox.maxlen:
                dropped = self._inbox[0]
                logger.warning(
                    "Subscriber inbox for setlist %s is full; dropping event for song %s (seq %d)",
                    self.collection_id,
                    dropped.subject_id,
                    dropped.sequence_number,
                )
            self._inbox.append(event)
            if self._draining:
                return False
            self._draining = True
            return True

    def drain_inbox(self) -> None:
        """Deliver queued events until the inbox is empty."""
        while True:
            with self._inbox_lock:
                if not self._inbox or self._closed.is_set():
                    self._inbox.clear()
                    self._draining = False
                    return
                event = self._inbox.popleft()
            try:
                self.deliver(event)
            except Exception:
                logger.exception(
                    "Change feed handler failed for setlist %s, song %s",
                    self.collection_id,
                    event.subject_id,
                )

    def pending(self) -> int:
        with self._inbox_lock:
            return len(self._inbox)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def last_sequence(self, subject_id: int) -> int | None:
        """Return the highest sequence number processed for ``subject_id``."""
        with self._lock:
            return self._last_seen.get(subject_id)

    def deliver(self, event: ChangeEvent) -> bool:
        """Run the handler for ``event`` unless it is stale or the handle is closed.

        Returns:
            True if the handler ran, False if the event was discarded.
        """
        if self._closed.is_set():
            return False
        with self._lock:
            if self._closed.is_set():
                return False
            last = self._last_seen.get(event.subject_id)
            if last is not None and event.sequence_number <= last:
                logger.debug(
                    "Discarding stale event for song %s (seq %d <= %d)",
                    event.subject_id,
                    event.sequence_number,
                    last,
                )
                return False
            self._handler(event)
            self._last_seen[event.subject_id] = event.sequence_number
        return True

    def close(self) -> None:
        """Stop delivery and detach from the feed. Safe to call more than once."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._feed._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventStream:
    """Adapt a subscription to an async iterator for streaming responses.

    Events are handed from feed worker threads to the owning event loop. When
    the buffer is full the oldest event is dropped; the client reconciles from
    a full read, and per-song sequence numbers keep the rest consistent.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        collection_id: int,
        *,
        loop: asyncio.AbstractEventLoop,
        maxsize: int,
    ) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.subscription = feed.subscribe(collection_id, self._from_worker)

    def _from_worker(self, event: ChangeEvent) -> None:
        self._loop.call_soon_threadsafe(self._offer, event)

    def _offer(self, event: ChangeEvent | None) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            if dropped is None:
                # Keep the close marker; the stream is ending anyway.
                self._queue.put_nowait(None)
                return
            logger.warning(
                "Event stream for setlist %s is full; dropping event for song %s",
                self.subscription.collection_id,
                dropped.subject_id,
            )
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Return the next event, or None on timeout or once closed."""
        if self.subscription.closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Close the underlying subscription and wake any waiting reader."""
        if self.subscription.closed:
            return
        self.subscription.close()
        self._offer(None)


class ChangeFeed:
    """In-process publish/subscribe hub keyed by setlist id."""

    def __init__(self, max_workers: int | None = None, inbox_size: int | None = None) -> None:
        self._subscriptions: dict[int, set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.feed_max_workers,
            thread_name_prefix="change-feed",
        )
        self._inbox_size = inbox_size or settings.feed_subscriber_inbox_size
        self._pending: set[Future[None]] = set()
        self._closed = False

    def subscribe(self, collection_id: int, handler: EventHandler) -> Subscription:
        """Register ``handler`` for every change to songs of ``collection_id``."""
        subscription = Subscription(self, collection_id, handler, inbox_size=self._inbox_size)
        with self._lock:
            if self._closed:
                raise FeedUnavailableError("Change feed is closed")
            self._subscriptions[collection_id].add(subscription)
        logger.debug("Subscribed to setlist %s", collection_id)
        return subscription

    def open_stream(
        self,
        collection_id: int,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        maxsize: int | None = None,
    ) -> EventStream:
        """Subscribe to ``collection_id`` and buffer events for an asyncio consumer."""
        return EventStream(
            self,
            collection_id,
            loop=loop or asyncio.get_running_loop(),
            maxsize=maxsize or settings.feed_stream_queue_size,
        )

    def subscriber_count(self, collection_id: int) -> int:
        with self._lock:
            return len(self._subscriptions.get(collection_id, ()))

    def publish(self, event: ChangeEvent) -> None:
        """Fan ``event`` out to the setlist's subscribers without waiting on them.

        Raises:
            FeedUnavailableError: If the feed can no longer accept events.
        """
        self._dispatch_local(event)

    def _dispatch_local(self, event: ChangeEvent) -> None:
        with self._lock:
            if self._closed:
                raise FeedUnavailableError("Change feed is closed")
            targets = list(self._subscriptions.get(event.collection_id, ()))
        for subscription in targets:
            if not subscription.enqueue(event):
                continue
            try:
                future = self._executor.submit(subscription.drain_inbox)
            except RuntimeError as err:
                raise FeedUnavailableError("Change feed executor is shut down") from err
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.collection_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.collection_id]
        logger.debug("Unsubscribed from setlist %s", subscription.collection_id)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries; return True if all finished in time."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Close every subscription and stop the delivery workers."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs]
        for subscription in subscriptions:
            subscription.close()
        self._executor.shutdown(wait=False, cancel_futures=True)


class RedisChangeFeed(ChangeFeed):
    """Change feed that relays events between processes through Redis pub/sub.

    ``publish`` only writes to Redis; a listener thread receives every
    setlist channel and dispatches to this process's local subscribers, so a
    vote handled by one worker reaches subscribers connected to any worker.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        url: str | None = None,
        channel_prefix: str | None = None,
        max_workers: int | None = None,
        inbox_size: int | None = None,
    ) -> None:
        super().__init__(max_workers=max_workers, inbox_size=inbox_size)
        self._prefix = channel_prefix or settings.redis_channel_prefix
        self._redis = client or redis.Redis.from_url(
            url or settings.redis_url,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_connect_timeout_seconds,
        )
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(**{f"{self._prefix}:collection:*": self._on_message})
        self._listener = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)

    def channel_for(self, collection_id: int) -> str:
        return f"{self._prefix}:collection:{collection_id}"

    def publish(self, event: ChangeEvent) -> None:
        payload = json.dumps(event.to_dict())
        try:
            self._redis.publish(self.channel_for(event.collection_id), payload)
        except redis.RedisError as err:
            raise FeedUnavailableError(f"Redis publish failed: {err}") from err

    def _on_message(self, message: dict[str, Any]) -> None:
        try:
            event = ChangeEvent.from_dict(json.loads(message["data"]))
        except (KeyError, TypeError, ValueError) as err:
            logger.warning("Ignoring malformed change event on %s: %s", message.get("channel"), err)
            return
        try:
            self._dispatch_local(event)
        except FeedUnavailableError:
            logger.debug("Dropping change event received after feed shutdown")

    def close(self) -> None:
        self._listener.stop()
        self._pubsub.close()
        super().close()


class _ChangeFeedSingleton:
    """Singleton wrapper for the process-wide change feed."""

    _instance: ChangeFeed | None = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> ChangeFeed:
        """Get or create the feed selected by ``FEED_BACKEND``."""
        with cls._lock:
            if cls._instance is None:
                if settings.feed_backend == "redis":
                    cls._instance = RedisChangeFeed()
                else:
                    cls._instance = ChangeFeed()
            return cls._instance

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            instance, cls._instance = cls._instance, None
        if instance is not None:
            instance.close()


def get_change_feed() -> ChangeFeed:
    """Return the singleton change feed."""
    return _ChangeFeedSingleton.get_instance()


def reset_change_feed() -> None:
    """Close and discard the singleton change feed."""
    _ChangeFeedSingleton.reset()
