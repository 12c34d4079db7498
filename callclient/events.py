from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Awaitable[None] | None]


def _event_key(event: str) -> str:
    if isinstance(event, Enum):
        return str(event.value)
    return str(event)


class EventEmitter:
    """Ordered event fan-out shared by tracks and transports.

    Handlers run one after another in registration order and each emission
    completes before ``emit`` returns, so a single emitter never reorders
    events. A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(_event_key(event), []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(_event_key(event))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[_event_key(event)]

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(_event_key(event), []))

    async def emit(self, event: str, *args: object) -> None:
        for handler in list(self._handlers.get(_event_key(event), [])):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error while handling event %s", event)
