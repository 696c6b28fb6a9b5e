"""Work queues on a JetStream-style stream with explicit acknowledgement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from mpcium import logger

STREAM_MAX_BYTES = 10_485_760
CONSUMER_MAX_ACK_PENDING = 1000
CONSUMER_ACK_WAIT = 30.0
CONSUMER_MAX_DELIVER = 3
MSG_ID_HEADER = "Nats-Msg-Id"


class PermanentError(Exception):
    """A handler failure that must not be retried."""

    def __init__(self, message: str = "Permanent messaging error") -> None:
        super().__init__(message)


class EnqueueError(Exception):
    """A message could not be published to the queue."""


@dataclass
class EnqueueOptions:
    idempotent_key: str = ""


def _is_permanent(exc: BaseException | None) -> bool:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, PermanentError):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False


class MessageQueue:
    """One durable consumer's view of the queue."""

    def __init__(self, consumer_name: str, js: Any, consumer: Any) -> None:
        self.consumer_name = consumer_name
        self.js = js
        self.consumer = consumer
        self.consumer_context: Any = None

    def enqueue(self, topic: str, message: bytes, options: EnqueueOptions | None = None) -> None:
        """Publish ``message``; an idempotency key in ``options`` deduplicates it."""
        headers = {MSG_ID_HEADER: options.idempotent_key} if options is not None else {}
        logger.info("Publishing message", "topic", topic, "consumerName", self.consumer_name)
        try:
            self.js.publish_msg(topic, bytes(message), headers)
        except Exception as exc:
            logger.error("Failed to publish message to JetStream", exc,
                         "topic", topic, "consumerName", self.consumer_name)
            raise EnqueueError(f"error enqueueing message: {exc}") from exc

    def dequeue(self, topic: str, handler: Callable[[bytes], None]) -> None:
        """Deliver messages to ``handler``: ack on return, term on PermanentError, nak otherwise."""

        def _on_message(msg: Any) -> None:
            try:
                meta = msg.metadata()
            except Exception:
                meta = None
            logger.debug("Received message", "meta", meta)
            try:
                handler(msg.data)
            except Exception as exc:
                if _is_permanent(exc):
                    logger.info("Permanent error on message", "meta", meta)
                    action, failure = msg.term, "Failed to terminate message"
                else:
                    logger.error("Error handling message: ", exc)
                    action, failure = msg.nak, "Failed to nak message"
            else:
                logger.debug("Message Acknowledged", "meta", meta)
                action, failure = msg.ack, "Error acknowledging message: "
            try:
                action()
            except Exception as reply_exc:
                logger.error(failure, reply_exc)

        self.consumer_context = self.consumer.consume(_on_message)

    def close(self) -> None:
        """Stop consuming, if :meth:`dequeue` started a consumer."""
        if self.consumer_context is not None:
            self.consumer_context.stop()


class MessageQueueManager:
    """Owns the queue's stream and creates consumers on it."""

    def __init__(self, queue_name: str, subject_wildcards: list[str], js: Any) -> None:
        self.queue_name = queue_name
        self.js = js

        try:
            stream = js.stream(queue_name)
        except Exception:
            logger.warn("Stream not found, creating new stream", "stream", queue_name)
            stream = None
        if stream is not None:
            try:
                logger.debug("Stream found", "info", stream.info())
            except Exception:
                logger.debug("Stream found", "info", None)

        try:
            js.create_or_update_stream({
                "name": queue_name,
                "description": "Stream for " + queue_name,
                "subjects": list(subject_wildcards),
                "max_bytes": STREAM_MAX_BYTES,
                "storage": "file",
                "retention": "workqueue",
            })
        except Exception as exc:
            logger.fatal("Error creating JetStream stream: ", exc)
        logger.info("Creating apex NATs Jetstream context successfully!",
                    "streamName", queue_name, "subjects", list(subject_wildcards))

    def new_message_queue(self, consumer_name: str) -> MessageQueue:
        """Create (or update) the durable consumer ``consumer_name`` and return its queue."""
        wildcard = f"{self.queue_name}.{consumer_name}.*"
        config = {
            "name": consumer_name,
            "durable_name": consumer_name,
            "max_ack_pending": CONSUMER_MAX_ACK_PENDING,
            "ack_wait": CONSUMER_ACK_WAIT,
            "ack_policy": "explicit",
            "filter_subjects": [wildcard],
            "max_deliver": CONSUMER_MAX_DELIVER,
        }
        logger.info("Creating consumer for subject", "consumerName", consumer_name,
                    "queueName", self.queue_name, "filterSubject", wildcard, "config", config)
        try:
            consumer = self.js.create_or_update_consumer(self.queue_name, config)
        except Exception as exc:
            logger.fatal("Error creating JetStream consumer: ", exc)
        return MessageQueue(consumer_name, self.js, consumer)