"""In-process event bus for ``transaction.*``, ``sync.*``, ``account.*`` and ``webhook.*``.

Listeners subscribe to an exact type (``sync.failed``), a prefix pattern
(``sync.*``) or everything (``*``). A failing listener is logged and never
breaks delivery to the others or the emitter.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


Listener = Callable[[Event], Awaitable[None] | None]


def _matches(pattern: str, event_type: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


class EventBus:
    def __init__(self) -> None:
        self._listeners: list[tuple[str, Listener]] = []
        self._history: list[Event] = []
        self._history_size = 100

    def on(self, pattern: str, listener: Listener) -> None:
        self._listeners.append((pattern, listener))

    def off(self, pattern: str, listener: Listener) -> None:
        self._listeners = [
            (p, fn) for p, fn in self._listeners if not (p == pattern and fn == listener)
        ]

    @property
    def history(self) -> list[Event]:
        """Most recent events, oldest first."""
        return list(self._history)

    async def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=payload or {})
        self._history.append(event)
        del self._history[: -self._history_size]
        logger.debug("Event %s %s", event_type, event.payload)

        for pattern, listener in list(self._listeners):
            if not _matches(pattern, event_type):
                continue
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener for %s failed", event_type)
        return event
