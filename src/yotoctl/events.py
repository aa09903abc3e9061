"""Push channels for connection status and telemetry.

An :class:`EventChannel` fans each emitted item out to any number of
independent listeners.  Listeners either register a plain callback with
:meth:`~EventChannel.subscribe` or iterate :meth:`~EventChannel.stream`::

    unsubscribe = manager.status.subscribe(print)

    async for event in manager.telemetry.stream():
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Non-blocking observer list.

    :meth:`emit` never awaits: callbacks run inline and stream listeners
    receive the item through their own unbounded queue, so a slow consumer
    cannot stall message reception.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._callbacks: list[Callable[[T], object]] = []
        self._queues: list[asyncio.Queue[T]] = []

    def subscribe(self, callback: Callable[[T], object]) -> Callable[[], None]:
        """Register *callback* and return a function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def stream(self) -> AsyncIterator[T]:
        """Yield every item emitted after the stream starts.

        The listener is removed when the consuming loop exits.
        """
        queue: asyncio.Queue[T] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    @property
    def listener_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def emit(self, item: T) -> None:
        for queue in list(self._queues):
            queue.put_nowait(item)
        for callback in list(self._callbacks):
            try:
                callback(item)
            except Exception:
                # A broken listener must not stop delivery to the others.
                logger.exception("Listener on %s channel failed", self._name or "event")
