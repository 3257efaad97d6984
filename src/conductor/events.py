"""Observer lists for coordination events.

Listeners run synchronously, in subscription order, on whichever thread
emits. A listener that raises is logged and skipped so the remaining
listeners still see the event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventHook:
    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self._listeners = [item for item in self._listeners if item is not listener]

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("%s listener failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)
