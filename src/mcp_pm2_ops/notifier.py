"""Push notifications for connection state and host key decisions."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .log import log_connection_change
from .models import HostFingerprint


@dataclass(frozen=True)
class ConnectionChanged:
    connected: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class HostKeyVerificationRequired:
    fingerprint: HostFingerprint
    is_changed: bool


Event = Union[ConnectionChanged, HostKeyVerificationRequired]
Listener = Callable[[Event], None]


class ConnectionStateNotifier:
    """Fan-out of session events to subscribed listeners.

    Connection events are only published on a real transition; the initial
    state is "disconnected". Host key events are always published.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._listeners: list[Listener] = []
        self._last_connected = False

    @property
    def last_connected(self) -> bool:
        return self._last_connected

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> tuple["asyncio.Queue[Event]", Callable[[], None]]:
        """Deliver events into an asyncio queue for consumers that await them."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

        def enqueue(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning(f"Event queue full, dropping {type(event).__name__}")

        return queue, self.subscribe(enqueue)

    def publish_connection(self, connected: bool, error: Optional[str] = None) -> bool:
        """Publish a connection change. Returns False when the state did not change."""
        if connected == self._last_connected:
            return False
        self._last_connected = connected
        log_connection_change(self.logger, connected, error)
        self._dispatch(ConnectionChanged(connected=connected, error=error))
        return True

    def publish_host_key(self, fingerprint: HostFingerprint, is_changed: bool) -> None:
        self._dispatch(
            HostKeyVerificationRequired(
                fingerprint=fingerprint.model_copy(deep=True), is_changed=is_changed
            )
        )

    def _dispatch(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception(f"Listener failed handling {type(event).__name__}")
