"""Callback registry shared by the engine, workers and the orchestrator."""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT")
Unsubscribe = Callable[[], None]


class ListenerRegistry(Generic[EventT]):
    """Ordered set of listeners addressed by opaque handle tokens.

    ``emit`` delivers synchronously in subscription order. A listener that
    raises is logged and the remaining listeners still run.
    """

    def __init__(self, name: str = "listener") -> None:
        self._name = name
        self._listeners: dict[object, Callable[[EventT], None]] = {}

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: Callable[[EventT], None]) -> Unsubscribe:
        token = object()
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def emit(self, event: EventT) -> None:
        # snapshot so listeners may unsubscribe while being notified
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("%s raised while handling an event", self._name)

    def clear(self) -> None:
        self._listeners.clear()


__all__ = ["ListenerRegistry", "Unsubscribe"]
