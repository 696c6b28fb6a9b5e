"""Direct request/reply messaging between nodes, with local delivery to self."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol

from mpcium import logger
from mpcium.pubsub import NatsSubscription, Subscription

REQUEST_TIMEOUT = 3.0
SEND_ATTEMPTS = 3
RETRY_DELAY = 0.05
ACK_REPLY = b"OK"


class _Message(Protocol):
    data: bytes

    def respond(self, data: bytes) -> Any: ...


class _Connection(Protocol):
    """The parts of a NATS connection this module uses."""

    def request(self, subject: str, data: bytes, timeout: float) -> Any: ...

    def subscribe(self, subject: str, cb: Callable[[Any], None]) -> Any: ...


class NoHandlersError(LookupError):
    """No local handler is registered for a topic."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"no handlers found for topic {topic}")
        self.topic = topic


class DirectMessaging:
    """Sends messages to one peer and waits for its acknowledgement."""

    def __init__(self, conn: _Connection) -> None:
        self.conn = conn
        self._handlers: dict[str, list[Callable[[bytes], None]]] = {}
        self._lock = threading.Lock()

    def send_to_self(self, topic: str, message: bytes) -> None:
        """Hand ``message`` to every local handler of ``topic`` without using the connection."""
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        if not handlers:
            raise NoHandlersError(topic)
        for handler in handlers:
            handler(message)

    def send_to_other(self, topic: str, message: bytes) -> None:
        """Send ``message`` as a request, retrying on failure; raise the last error if all fail."""
        data = bytes(message)
        for attempt in range(SEND_ATTEMPTS):
            try:
                self.conn.request(topic, data, REQUEST_TIMEOUT)
                return
            except Exception as exc:
                logger.error(
                    "Failed to send direct message", exc, "attempt", attempt + 1, "topic", topic
                )
                if attempt == SEND_ATTEMPTS - 1:
                    raise
                time.sleep(RETRY_DELAY)

    def listen(self, topic: str, handler: Callable[[bytes], None]) -> Subscription:
        """Deliver requests on ``topic`` to ``handler`` and acknowledge each one."""

        def _dispatch(msg: _Message) -> None:
            handler(msg.data)
            try:
                msg.respond(ACK_REPLY)
            except Exception as exc:
                logger.error("Failed to respond to message", exc)

        subscription = self.conn.subscribe(topic, _dispatch)
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
        return NatsSubscription(subscription)