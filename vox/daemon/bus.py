"""In-process event bus carrying queue events and user-visible notices."""

import asyncio
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

Handler = Callable[["Event"], Any]


@dataclass
class Event:
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None


def _make_ref(handler: Handler) -> weakref.ref:
    # Bound methods need WeakMethod or the reference dies immediately
    if hasattr(handler, "__self__"):
        return weakref.WeakMethod(handler)
    return weakref.ref(handler)


class EventBus:
    """
    Async pub/sub for ``category.action`` events.

    Subscribers are held weakly, so a status view that goes away stops
    receiving events without unsubscribing. Producers never block: when the
    buffer is full the event is dropped and counted.

    Event types:
        queue.paused, queue.resumed, queue.drained
        notice.info, notice.warning, notice.error
    """

    def __init__(self, maxsize: int = 1000):
        self._subscribers: Dict[str, List[weakref.ref]] = defaultdict(list)
        self._events: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats: Dict[str, int] = defaultdict(int)

    def subscribe(self, event_pattern: str, handler: Handler) -> Callable[[], None]:
        """
        Subscribe to events matching a pattern (``notice.*``, ``*`` or exact).

        Returns an unsubscribe function.
        """
        self._subscribers[event_pattern].append(_make_ref(handler))
        logger.debug(f"Subscribed handler to pattern: {event_pattern}")
        return lambda: self.unsubscribe(event_pattern, handler)

    def unsubscribe(self, event_pattern: str, handler: Handler) -> None:
        self._subscribers[event_pattern] = [
            ref for ref in self._subscribers[event_pattern]
            if ref() is not None and ref() != handler
        ]

    async def emit(self, event: Event) -> bool:
        return self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> bool:
        """Buffer an event for delivery. Returns False if it was dropped."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event buffer full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return False

        self._stats['emitted'] += 1
        return True

    @property
    def pending(self) -> int:
        return self._events.qsize()

    async def start(self) -> None:
        if self._running:
            logger.warning("Event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.debug("Event bus started")

    async def stop(self) -> None:
        """Stop the processor after delivering whatever is still buffered."""
        self._running = False
        if self._processor_task:
            await self._processor_task
            self._processor_task = None

        while not self._events.empty():
            await self._dispatch(self._events.get_nowait())
        logger.debug("Event bus stopped")

    async def _process_events(self) -> None:
        while self._running:
            try:
                # Timeout so the running flag is re-checked
                event = await asyncio.wait_for(self._events.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        tasks = []
        for handler in self._handlers_for(event.type):
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))

        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.type}: {result}")
                self._stats['handler_errors'] += 1

        self._stats['processed'] += 1

    def _handlers_for(self, event_type: str) -> List[Handler]:
        handlers = []
        for pattern, refs in self._subscribers.items():
            if not self._matches_pattern(event_type, pattern):
                continue
            alive = [ref for ref in refs if ref() is not None]
            self._subscribers[pattern] = alive
            handlers.extend(ref() for ref in alive)
        return handlers

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return event_type.startswith(pattern[:-1])
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset_stats(self) -> None:
        self._stats.clear()


class Notifier:
    """
    User-visible notices.

    Each notice is logged and published as a ``notice.<level>`` event so any
    front end (the CLI, a status view) can surface it.
    """

    LEVELS = ("info", "warning", "error")

    def __init__(self, bus: Optional[EventBus] = None, source: str = "vox"):
        self.bus = bus
        self.source = source

    def __call__(self, message: str, level: str = "info", **data: Any) -> None:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown notice level: {level}")

        logger.log(level.upper(), f"Notice: {message}")

        if self.bus is not None:
            self.bus.emit_nowait(Event(
                type=f"notice.{level}",
                data={"message": message, **data},
                source=self.source
            ))
