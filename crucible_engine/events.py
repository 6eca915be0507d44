"""In-memory domain event bus."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

POSITION_OPENED = "positionOpened"
POSITION_CLOSED = "positionClosed"
BALANCE_CHANGED = "balanceChanged"

Handler = Callable[[str, dict[str, Any]], Any]


class InMemoryEventBus:
    """Fan-out to subscribers; ``"*"`` subscribes to every event.

    Coroutine handlers are scheduled on the running loop. A failing handler
    is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return unsubscribe

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        logger.debug("Event %s: %s", name, payload)
        for handler in [*self._handlers.get(name, ()), *self._handlers.get("*", ())]:
            try:
                result = handler(name, payload)
            except Exception as e:
                logger.error("Event handler for %s failed: %s", name, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
