"""Callback registries used by the client to publish events to observers."""

from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Listeners(Generic[T]):
    """Ordered set of single-argument callbacks.

    ``connect`` returns a handle that removes the callback again. ``emit``
    calls every callback registered at the time of the call; callbacks added
    or removed while emitting take effect on the next emit.
    """

    def __init__(self, name: str = "listeners", *, isolate: bool = False) -> None:
        self._name = name
        self._isolate = isolate
        self._callbacks: List[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def connect(self, callback: Callable[[T], None]) -> Unsubscribe:
        assert callable(callback), f"{self._name} callback must be callable"
        assert callback not in self._callbacks, f"{self._name} callback already registered"
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, value: T) -> None:
        for callback in tuple(self._callbacks):
            if not self._isolate:
                callback(value)
                continue
            try:
                callback(value)
            except Exception:
                logger.debug("%s callback failed", self._name, exc_info=True)

    def clear(self) -> None:
        self._callbacks.clear()


__all__ = ["Listeners", "Unsubscribe"]
