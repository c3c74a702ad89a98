"""Connectivity state with change subscriptions."""

from __future__ import annotations

import logging
from collections.abc import Callable

from tracksync.utils.observers import HandlerSet

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Tracks whether the network is believed reachable.

    The host sets the state from its own signals. Handlers receive the new
    boolean value on each transition.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._handlers = HandlerSet("connectivity")

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, handler: Callable[[bool], None]) -> Callable[[], None]:
        return self._handlers.subscribe(handler)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._handlers.publish(online)
