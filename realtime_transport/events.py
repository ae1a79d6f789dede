# =============================================================================
# Realtime Transport -- Event Emitter
# =============================================================================
#
# Name -> handlers registry shared by adapters and orchestrators.  Any string
# is a valid event name so message types can be routed without declaring
# them up front.
# =============================================================================

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable

from ._logging import logger as _default_logger
from .types import Handler, TransportEvent, Unsubscribe


class EventEmitter:
    """Registry of event handlers with isolated dispatch.

    A handler raising an exception is logged and does not stop the other
    handlers registered for the same event.  Coroutine handlers are
    scheduled as tasks.
    """

    def __init__(self, logger: Any = None, label: str = "transport") -> None:
        self._logger = logger or _default_logger
        self._label = label
        # dict as an ordered set: handler -> None
        self._handlers: dict[str, dict[Handler, None]] = {}
        self._handler_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> Unsubscribe:
        """Register *handler* for *event*; returns the matching unsubscribe."""
        key = _key(event)
        self._handlers.setdefault(key, {})[handler] = None

        def unsubscribe() -> None:
            self.off(key, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        key = _key(event)
        handlers = self._handlers.get(key)
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[key]

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(_key(event)))

    def handler_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._handlers.get(_key(event), {}))
        return sum(len(h) for h in self._handlers.values())

    def items(self) -> list[tuple[str, Handler]]:
        """Snapshot of every (event, handler) registration."""
        return [(name, h) for name, handlers in self._handlers.items() for h in handlers]

    def emit(self, event: TransportEvent) -> None:
        handlers = self._handlers.get(event.type)
        if not handlers:
            return
        for handler in list(handlers):
            # skip handlers removed by an earlier handler of this dispatch
            current = self._handlers.get(event.type)
            if current is None or handler not in current:
                continue
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    self._fire_handler(result, event.type)
            except Exception:
                self._logger.exception(
                    "Error in %s event handler for '%s'", self._label, event.type
                )

    def clear(self) -> None:
        self._handlers.clear()

    def _fire_handler(self, coro: Awaitable[Any], event_type: str) -> None:
        task = asyncio.ensure_future(self._guard(coro, event_type))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _guard(self, coro: Awaitable[Any], event_type: str) -> None:
        try:
            await coro
        except Exception:
            self._logger.exception(
                "Error in async %s event handler for '%s'", self._label, event_type
            )


def _key(event: Any) -> str:
    """Event names may be given as plain strings or EventName members."""
    return event.value if isinstance(event, Enum) else str(event)
