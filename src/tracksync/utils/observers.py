"""Minimal handler registry used for change, auth and connectivity events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class HandlerSet:
    """Ordered set of callbacks with ``subscribe(handler) -> unsubscribe``.

    Handlers are called synchronously, in subscription order. A failing
    handler is logged and does not prevent the remaining handlers from
    running.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: list[Callable[..., Any]] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Callable[..., Any]) -> Unsubscribe:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            self._handlers = [h for h in self._handlers if h is not handler]

        return _unsubscribe

    def publish(self, *args: Any) -> None:
        # Copy so handlers may unsubscribe while being dispatched
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception as e:
                logger.warning("%s handler error: %s", self._name, e, exc_info=True)
