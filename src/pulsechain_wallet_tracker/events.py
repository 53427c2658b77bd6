"""Typed in-process publish/subscribe topics.

One topic per event type. A topic has any number of independent listeners;
listeners may be plain callables or coroutine functions. A failing listener
is logged and does not prevent delivery to the others.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Awaitable[None] | None]


class EventTopic(Generic[T]):
    """A named event stream with typed payloads.

    Example:
        ```python
        on_update: EventTopic[BalanceUpdated] = EventTopic("balance_updated")
        unsubscribe = on_update.subscribe(handler)
        await on_update.publish(update)
        unsubscribe()
        ```
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Listener[T]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"EventTopic({self.name!r}, listeners={len(self._listeners)})"

    def subscribe(self, listener: Listener[T]) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener[T]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    async def publish(self, payload: T) -> None:
        """Deliver `payload` to every listener, in subscription order."""
        for listener in list(self._listeners):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in %s listener %r: %s", self.name, listener, e)
