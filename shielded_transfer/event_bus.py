"""
Event Bus Adapter

The engine keeps exactly one callback per event kind and silently replaces
it when registered again. This adapter registers once per kind and fans
events out in-process to any number of subscribers, each with its own
bounded queue.
"""

import asyncio
import threading
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from .models import BalanceEvent, EventKind

_CLOSED = object()


class Subscription:
    """
    Lazy, unbounded-in-time stream of events of one kind

    Iterate with ``async for``. Iteration ends only after close() or
    EventBusAdapter.unsubscribe_all(); a finished subscription cannot be
    restarted.
    """

    def __init__(self, bus: "EventBusAdapter", kind: EventKind, maxsize: int):
        self.kind = kind
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: Any):
        if self._closed and item is not _CLOSED:
            return
        if self._queue.full():
            # Oldest event goes first; the newest snapshot per bucket is what matters
            self._queue.get_nowait()
            if item is not _CLOSED:
                self.dropped += 1
                logger.warning(f"⚠ {self.kind.value} queue full, dropped oldest event ({self.dropped} so far)")
        self._queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        self._push(_CLOSED)


class EventBusAdapter:
    """
    Single upstream registration per event kind, in-process fan-out

    Registration state is guarded by a lock; engine callbacks arriving from
    another thread are handed to the owning event loop.
    """

    def __init__(self, engine, queue_size: int = 1000):
        """
        Args:
            engine: Object implementing ShieldedEngine.set_event_callback
            queue_size: Per-subscriber queue bound
        """
        self._engine = engine
        self._queue_size = queue_size
        self._subscribers: Dict[EventKind, List[Subscription]] = {}
        self._registered: set = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def subscribe(self, kind: EventKind) -> Subscription:
        """
        Open a new subscription; must be called from the event loop

        Args:
            kind: Event kind to receive

        Returns:
            Subscription
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._loop = loop
            sub = Subscription(self, kind, self._queue_size)
            self._subscribers.setdefault(kind, []).append(sub)
            if kind not in self._registered:
                self._engine.set_event_callback(kind, self._make_callback(kind))
                self._registered.add(kind)
                logger.debug(f"Registered engine callback for {kind.value}")
        return sub

    def subscriber_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._subscribers.get(kind, []))

    def unsubscribe_all(self):
        """Release every engine callback and end every open subscription"""
        with self._lock:
            for kind in self._registered:
                self._engine.set_event_callback(kind, None)
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
            self._registered.clear()
            self._subscribers.clear()
        for sub in subscriptions:
            sub.close()
        logger.debug(f"Event bus released ({len(subscriptions)} subscriptions closed)")

    def _remove(self, sub: Subscription):
        with self._lock:
            subs = self._subscribers.get(sub.kind, [])
            if sub in subs:
                subs.remove(sub)

    def _make_callback(self, kind: EventKind):
        def callback(payload: Any):
            self._dispatch(kind, payload)
        return callback

    def _decode(self, kind: EventKind, payload: Any) -> Any:
        if kind is EventKind.BALANCE_UPDATE and not isinstance(payload, BalanceEvent):
            if not isinstance(payload, Mapping):
                raise TypeError(f"Unexpected balance payload type: {type(payload).__name__}")
            return BalanceEvent.from_engine(payload)
        return payload

    def _dispatch(self, kind: EventKind, payload: Any):
        try:
            event = self._decode(kind, payload)
        except (TypeError, ValueError, KeyError) as e:
            # Raising here would land inside the engine's notifier
            logger.warning(f"⚠ Dropping undecodable {kind.value} event: {e}")
            return

        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._fan_out(kind, event)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._fan_out, kind, event)
        else:
            logger.debug(f"Event loop closed, {kind.value} event discarded")

    def _fan_out(self, kind: EventKind, event: Any):
        with self._lock:
            subs = list(self._subscribers.get(kind, []))
        for sub in subs:
            sub._push(event)
