"""Explicit observer list used by loaders, pollers and the search index."""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ObserverList(Generic[T]):
    """Ordered set of callbacks notified with a snapshot value.

    A failing callback is logged and skipped so one bad subscriber does not
    stop the others from receiving the update.
    """

    def __init__(self):
        self._callbacks: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, value: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.warning("Observer callback failed | %s", str(e)[:200])

    def __len__(self) -> int:
        return len(self._callbacks)
