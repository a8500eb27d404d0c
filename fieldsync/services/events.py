from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import inspect
import logging

from fieldsync.domain.contracts import EventHandler

logger = logging.getLogger("queue")


@dataclass
class EventBus:
    """In-process publish/subscribe for queue notifications."""

    _handlers: dict[str, list[EventHandler]] = field(default_factory=dict, init=False, repr=False)

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscriber_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("event handler failed", extra={"reason": event})
