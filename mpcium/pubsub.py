"""Plain publish/subscribe over a NATS-style connection."""

from __future__ import annotations

import abc
from typing import Any, Callable, Mapping, Protocol

from mpcium import logger


class _Connection(Protocol):
    """The parts of a NATS connection this module uses."""

    def publish(
        self,
        subject: str,
        data: bytes,
        reply: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> Any: ...

    def subscribe(self, subject: str, cb: Callable[[Any], None]) -> Any: ...


class Subscription(abc.ABC):
    """A live subscription that can be cancelled."""

    @abc.abstractmethod
    def unsubscribe(self) -> None:
        """Stop receiving messages."""


class NatsSubscription(Subscription):
    """Wraps a connection-level subscription handle."""

    def __init__(self, subscription: Any) -> None:
        self.subscription = subscription

    def unsubscribe(self) -> None:
        self.subscription.unsubscribe()


class NatsPubSub:
    """Publishes to and subscribes on subjects of a connection."""

    def __init__(self, conn: _Connection) -> None:
        self.conn = conn

    def publish(self, topic: str, message: bytes) -> None:
        logger.debug("[NATS] Publishing message", "topic", topic)
        self.conn.publish(topic, bytes(message))

    def publish_with_reply(
        self,
        topic: str,
        reply: str,
        data: bytes,
        headers: Mapping[str, str] | None,
    ) -> None:
        """Publish ``data`` with a reply subject and headers (each key set to one value)."""
        header_map = {str(key): str(value) for key, value in (headers or {}).items()}
        self.conn.publish(topic, bytes(data), reply=reply, headers=header_map)

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> Subscription:
        """Call ``handler`` with every message on ``topic``."""

        def _dispatch(msg: Any) -> None:
            handler(msg)

        return NatsSubscription(self.conn.subscribe(topic, _dispatch))