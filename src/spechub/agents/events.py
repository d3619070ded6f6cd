from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class EventBus:
    """In-process fan-out of ``{"workspace_id", "message": {"method", "params"}}`` payloads."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler failed for %s", payload.get("message"))

    def emit(self, workspace_id: str, method: str, params: dict[str, Any]) -> None:
        self.publish(
            {"workspace_id": workspace_id, "message": {"method": method, "params": params}}
        )

    def __len__(self) -> int:
        return len(self._handlers)
