"""Publish/subscribe channel for connection and configuration state."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

STATE = "state"
DEVICE_INFO = "device_info"
BUTTONS = "buttons"
ERROR = "error"

Listener = Callable[[Any], None]
LOGGER = logging.getLogger(__name__)


class EventBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``topic``; returns a function that unregisters it."""
        self._listeners[topic].append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners[topic]:
                self._listeners[topic].remove(listener)

        return _unsubscribe

    def publish(self, topic: str, value: Any) -> None:
        for listener in list(self._listeners[topic]):
            try:
                listener(value)
            except Exception:
                LOGGER.exception("Listener for '%s' failed", topic)
