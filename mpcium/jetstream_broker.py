"""Durable stream broker over a JetStream-style context."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from mpcium import logger

DEFAULT_ACK_WAIT = 30.0
DEFAULT_MAX_DELIVERY_ATTEMPTS = 3
DEFAULT_CONSUMER_PREFIX = "consumer"
DEFAULT_STREAM_MAX_AGE = 180.0
DEFAULT_BACKOFF_DURATION = 30.0


class BrokerError(Exception):
    """A broker operation failed."""


class ConnectionClosedError(BrokerError):
    """The underlying connection is closed."""

    def __init__(self, message: str = "connection is closed") -> None:
        super().__init__(message)


class StreamCreationError(BrokerError):
    """The stream could not be created or updated."""


class ConsumerCreationError(BrokerError):
    """A consumer could not be created or updated."""


class _Connection(Protocol):
    is_closed: bool

    def close(self) -> Any: ...


class _ConsumeContext(Protocol):
    def stop(self) -> Any: ...


class _Consumer(Protocol):
    def consume(self, handler: Callable[[Any], None]) -> _ConsumeContext: ...

    def fetch(self, batch: int, max_wait: float) -> Iterable[Any]: ...


class _Stream(Protocol):
    def info(self) -> Any: ...


class _JetStream(Protocol):
    def create_or_update_stream(self, config: dict[str, Any]) -> Any: ...

    def publish(self, subject: str, data: bytes) -> Any: ...

    def create_or_update_consumer(self, stream: str, config: dict[str, Any]) -> _Consumer: ...

    def stream(self, name: str) -> _Stream: ...


@dataclass
class BrokerConfig:
    """Stream and consumer settings; durations are in seconds."""

    description: str | None = None
    retention: str = "interest"
    storage: str = "file"
    max_age: float = DEFAULT_STREAM_MAX_AGE
    discard: str = "old"
    ack_wait: float = DEFAULT_ACK_WAIT
    max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS
    consumer_name_prefix: str = DEFAULT_CONSUMER_PREFIX
    deliver_policy: str = "all"
    backoff_durations: list[float] = field(
        default_factory=lambda: [DEFAULT_BACKOFF_DURATION] * 3
    )


def sanitize_consumer_name(name: str) -> str:
    """Make ``name`` usable as a durable consumer name."""
    for old, new in (
        (".", "_"),
        (":", "_"),
        (" ", "_"),
        ("-", "_"),
        (">", "all"),
        ("*", "any"),
    ):
        name = name.replace(old, new)
    if name and not name[0].isalpha() and name[0] != "_":
        name = "_" + name
    return name


@dataclass
class JetStreamSubscription:
    """A push consumer that is delivering messages."""

    consumer: Any
    consume_context: Any

    def unsubscribe(self) -> None:
        if self.consume_context is not None:
            self.consume_context.stop()


class JetStreamBroker:
    """Publishes to a stream and runs durable consumers on it."""

    def __init__(
        self,
        conn: _Connection,
        js: _JetStream,
        stream_name: str,
        subjects: list[str],
        config: BrokerConfig | None = None,
    ) -> None:
        self.conn = conn
        self.js = js
        self.stream_name = stream_name
        self.subjects = list(subjects)
        self.config = config if config is not None else BrokerConfig()
        if self.config.description is None:
            self.config.description = f"Stream for {stream_name}"
        self._ensure_stream_exists()
        logger.info("JetStream broker initialized successfully", "stream", stream_name)

    def _ensure_stream_exists(self) -> None:
        stream_config = {
            "name": self.stream_name,
            "description": self.config.description,
            "subjects": list(self.subjects),
            "max_age": self.config.max_age,
        }
        try:
            self.js.create_or_update_stream(stream_config)
        except Exception as exc:
            raise StreamCreationError(
                "failed to ensure stream exists: failed to create stream "
                f"for stream '{self.stream_name}': {exc}"
            ) from exc

    def _check_open(self) -> None:
        if self.conn.is_closed:
            raise ConnectionClosedError()

    def _consumer_config(self, name: str, subject: str) -> dict[str, Any]:
        return {
            "name": name,
            "durable_name": name,
            "ack_policy": "explicit",
            "max_deliver": self.config.max_delivery_attempts + 1,
            "backoff": list(self.config.backoff_durations),
            "deliver_policy": self.config.deliver_policy,
            "filter_subject": subject,
            "ack_wait": self.config.ack_wait,
        }

    def _create_consumer(self, name: str, subject: str) -> Any:
        try:
            return self.js.create_or_update_consumer(
                self.stream_name, self._consumer_config(name, subject)
            )
        except Exception as exc:
            raise ConsumerCreationError(
                f"failed to create consumer for consumer '{name}' "
                f"on stream '{self.stream_name}': {exc}"
            ) from exc

    def publish_message(self, subject: str, data: bytes) -> None:
        self._check_open()
        try:
            self.js.publish(subject, bytes(data))
        except Exception as exc:
            raise BrokerError(f"failed to publish message to subject {subject}: {exc}") from exc

    def create_subscription(
        self, consumer_name: str, subject: str, handler: Callable[[Any], None]
    ) -> JetStreamSubscription:
        """Start a durable consumer on ``subject`` delivering to ``handler``."""
        self._check_open()
        name = sanitize_consumer_name(consumer_name)
        logger.info("Creating subscription", "consumer", name, "subject", subject)
        consumer = self._create_consumer(name, subject)
        try:
            context = consumer.consume(lambda msg: handler(msg))
        except Exception as exc:
            raise BrokerError(
                f"failed to start consuming messages for consumer '{name}' "
                f"on stream '{self.stream_name}': {exc}"
            ) from exc
        logger.info("Subscription created successfully", "consumer", name, "subject", subject)
        return JetStreamSubscription(consumer=consumer, consume_context=context)

    def get_stream_info(self) -> Any:
        try:
            stream = self.js.stream(self.stream_name)
        except Exception as exc:
            raise BrokerError(f"failed to get stream '{self.stream_name}': {exc}") from exc
        return stream.info()

    def fetch_messages(
        self,
        consumer_name: str,
        subject: str,
        batch_size: int,
        handler: Callable[[Any], None],
    ) -> int:
        """Pull up to ``batch_size`` messages and hand each to ``handler``; return the count."""
        self._check_open()
        name = sanitize_consumer_name(consumer_name)
        logger.info("Creating fetch-based subscription", "consumer", name, "subject", subject)
        consumer = self._create_consumer(name, subject)
        try:
            messages = list(consumer.fetch(batch_size, max_wait=self.config.ack_wait))
        except Exception as exc:
            raise BrokerError(f"failed to fetch messages for consumer '{name}': {exc}") from exc
        for msg in messages:
            handler(msg)
        logger.info(
            "Fetched messages successfully",
            "consumer", name,
            "subject", subject,
            "count", len(messages),
        )
        return len(messages)

    def close(self) -> None:
        if self.conn is not None and not self.conn.is_closed:
            self.conn.close()