"""
Live update fan-out to connected staff displays.

One Broadcaster per process, created and closed by the app lifespan. Each subscriber
gets its own buffered channel bound to the event loop that consumes it; publish() may
be called from any thread (request handlers run in the threadpool) and never blocks:
- the subscriber set is copied under a lock, delivery happens outside it;
- a separate publish lock and a global sequence keep one publish order for everyone;
- a subscriber whose buffer overflows (or whose loop is gone) is dropped and must
  reconnect for a fresh snapshot.
"""

import asyncio
import itertools
import logging
import threading
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from uuid import uuid4

from anyio import ClosedResourceError, EndOfStream, WouldBlock, create_memory_object_stream

from visitor_queue.config import SUBSCRIBER_BUFFER_SIZE
from visitor_queue.models import EventKind, QueueEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """A subscriber's channel. Iterate it (async) to receive events until closed."""

    def __init__(
        self,
        kinds: Iterable[EventKind],
        loop: asyncio.AbstractEventLoop,
        max_buffer_size: int,
        on_overflow: Callable[[str], None],
    ) -> None:
        self.id = uuid4().hex
        self.kinds = frozenset(kinds)
        self.loop = loop
        self._on_overflow = on_overflow
        self._send_stream, self._receive_stream = create_memory_object_stream[QueueEvent](
            max_buffer_size=max_buffer_size
        )
        self.closed = False

    def wants(self, event: QueueEvent) -> bool:
        return event.kind in self.kinds

    def _offer(self, event: QueueEvent) -> None:
        # Runs on self.loop only.
        if self.closed:
            return
        try:
            self._send_stream.send_nowait(event)
        except WouldBlock:
            logger.warning("Subscriber %s buffer full; dropping subscriber", self.id)
            self._on_overflow(self.id)

    def _close(self) -> None:
        # Runs on self.loop only. Buffered events stay readable until the end of stream.
        if self.closed:
            return
        self.closed = True
        self._send_stream.close()

    async def get(self) -> Optional[QueueEvent]:
        """Next event, or None once the subscription has been closed and drained."""
        try:
            return await self._receive_stream.receive()
        except EndOfStream:
            self._receive_stream.close()
            return None
        except ClosedResourceError:
            return None

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> QueueEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Broadcaster:
    """Process-wide registry of subscriber channels with non-blocking publish."""

    def __init__(self, max_buffer_size: int = SUBSCRIBER_BUFFER_SIZE) -> None:
        if max_buffer_size < 1:
            raise ValueError("max_buffer_size must be >= 1")
        self._max_buffer_size = max_buffer_size
        self._subscribers: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def open_subscription(self, kinds: Iterable[EventKind] = (EventKind.TICKET,)) -> Subscription:
        """Register a new channel. Must be called from the loop that will consume it."""
        loop = asyncio.get_running_loop()
        sub = Subscription(kinds, loop, self._max_buffer_size, on_overflow=self.unsubscribe)
        with self._lock:
            if self._closed:
                raise RuntimeError("Broadcaster is closed")
            self._subscribers[sub.id] = sub
            total = len(self._subscribers)
        logger.info("Subscriber %s registered (kinds=%s, total=%d)", sub.id, sorted(k.value for k in sub.kinds), total)
        return sub

    async def subscribe(
        self,
        snapshot: Callable[[], Awaitable[T]],
        kinds: Iterable[EventKind] = (EventKind.TICKET,),
    ) -> Tuple[Subscription, T]:
        """
        Register a channel, then read the initial snapshot.

        Registering first means an event published while the snapshot is being read is
        queued on the channel and arrives as a redundant follow-up, never lost.
        """
        sub = self.open_subscription(kinds)
        try:
            state = await snapshot()
        except BaseException:
            self.unsubscribe(sub.id)
            raise
        return sub, state

    def publish(self, event: QueueEvent) -> int:
        """
        Deliver event to every interested subscriber. Fire-and-forget: never raises.
        Returns the number of subscribers the event was handed to.
        """
        with self._publish_lock:
            event.seq = next(self._seq)
            with self._lock:
                targets: List[Subscription] = list(self._subscribers.values())
            delivered = 0
            for sub in targets:
                if not sub.wants(event):
                    continue
                try:
                    # Always hop through the loop's callback queue so order is FIFO per loop.
                    sub.loop.call_soon_threadsafe(sub._offer, event)
                    delivered += 1
                except RuntimeError:
                    logger.warning("Subscriber %s loop closed; dropping subscriber", sub.id)
                    self._drop(sub.id)
        logger.debug("Published %s event seq=%d to %d subscriber(s)", event.kind.value, event.seq, delivered)
        return delivered

    def _drop(self, handle: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscribers.pop(handle, None)

    def unsubscribe(self, handle: str) -> None:
        """Remove a channel and close it. Idempotent; unknown handles are ignored."""
        sub = self._drop(handle)
        if sub is None:
            return
        try:
            sub.loop.call_soon_threadsafe(sub._close)
        except RuntimeError:
            # Loop already gone; nobody is left to read the channel.
            sub._close()
        logger.info("Subscriber %s unsubscribed (remaining=%d)", handle, self.subscriber_count)

    def close(self) -> None:
        """Teardown: end every subscription and refuse new ones."""
        with self._lock:
            self._closed = True
            handles = list(self._subscribers)
        for handle in handles:
            self.unsubscribe(handle)
        logger.info("Broadcaster closed (%d subscriber(s) ended)", len(handles))
