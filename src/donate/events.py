"""Notification port for payment events.

Services receive an EventSink instead of publishing to a global bus.
Emission is fire-and-forget: a failing listener is logged, never raised.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT = "successfulPayment"
SUCCESSFUL_SUBSCRIPTION_EXECUTION = "successfulSubscriptionExecution"
SUBSCRIPTION_CANCELLED = "subscriptionCancelled"


class EventSink(ABC):
    @abstractmethod
    def emit(self, event_name: str, *args: Any) -> None:
        """Publish an event. Must not raise."""


class NoopEventSink(EventSink):
    def emit(self, event_name: str, *args: Any) -> None:
        logger.debug(f"Dropping event {event_name}")


class ListenerEventSink(EventSink):
    """Dispatches events to registered callbacks.

    Coroutine callbacks are scheduled as tasks on the running loop; the
    emitter does not wait for them.
    """

    def __init__(self):
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def on(self, event_name: str, listener: Callable[..., Any]) -> None:
        self._listeners[event_name].append(listener)

    def emit(self, event_name: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event_name, ())):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._finished)
            except Exception:
                logger.exception(f"Listener for {event_name} failed")

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async listener failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for scheduled listener tasks (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


def emit_safely(sink: EventSink, event_name: str, *args: Any) -> None:
    """Emit through a sink whose implementation may not honour the no-raise rule."""
    try:
        sink.emit(event_name, *args)
    except Exception:
        logger.exception(f"Emitting {event_name} failed")
