"""Work queues on a durable stream with acknowledgement handling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from mpcium import logger
from mpcium.broker import (
    BrokerError,
    ConsumerConfig,
    ConsumerCreationError,
    StreamConfig,
    StreamCreationError,
    _ConsumeContext,
    _Consumer,
    _JetStream,
)

QUEUE_MAX_BYTES = 10_485_760
QUEUE_ACK_WAIT = 30.0
QUEUE_MAX_ACK_PENDING = 1000
QUEUE_MAX_DELIVER = 3
MSG_ID_HEADER = "Nats-Msg-Id"


class PermanentError(Exception):
    """Raised by a handler for a message that must not be redelivered."""


@dataclass
class EnqueueOptions:
    """Options for enqueueing; the key lets the server drop duplicates."""

    idempotent_key: str = ""


class MessageQueue:
    """A queue consumer and publisher bound to one consumer name."""

    def __init__(self, consumer_name: str, js: _JetStream, consumer: _Consumer) -> None:
        self.consumer_name = consumer_name
        self._js = js
        self._consumer = consumer
        self._context: _ConsumeContext | None = None

    def enqueue(self, topic: str, message: bytes, options: EnqueueOptions | None = None) -> None:
        """Publish a message to topic."""
        headers: dict[str, str] = {}
        if options is not None:
            headers[MSG_ID_HEADER] = options.idempotent_key
        logger.info("Publishing message", "topic", topic, "consumerName", self.consumer_name)
        try:
            self._js.publish(topic, message, headers)
        except Exception as exc:
            logger.error(
                "Failed to publish message to JetStream",
                exc,
                "topic",
                topic,
                "consumerName",
                self.consumer_name,
            )
            raise BrokerError(f"error enqueueing message: {exc}") from exc

    def dequeue(self, topic: str, handler: Callable[[bytes], None]) -> None:
        """Deliver queued messages to handler.

        A message is acknowledged when handler returns, terminated when it
        raises PermanentError and negatively acknowledged for redelivery when
        it raises anything else.
        """

        def on_message(msg: Any) -> None:
            try:
                meta = msg.metadata()
            except Exception:
                meta = None
            logger.debug("Received message", "meta", meta)
            try:
                handler(msg.data)
            except PermanentError:
                logger.info("Permanent error on message", "meta", meta)
                try:
                    msg.term()
                except Exception as exc:
                    logger.error("Failed to terminate message", exc)
                return
            except Exception as exc:
                logger.error("Error handling message: ", exc)
                try:
                    msg.nak()
                except Exception as nak_exc:
                    logger.error("Failed to nak message", nak_exc)
                return
            logger.debug("Message Acknowledged", "meta", meta)
            try:
                msg.ack()
            except Exception as exc:
                logger.error("Error acknowledging message: ", exc)

        self._context = self._consumer.consume(on_message)

    def close(self) -> None:
        """Stop consuming if dequeue was started."""
        if self._context is not None:
            self._context.stop()


class MessageQueueManager:
    """Creates the work-queue stream and the queues that read from it."""

    def __init__(self, queue_name: str, subjects: Iterable[str], js: _JetStream) -> None:
        self.queue_name = queue_name
        self.subjects = tuple(subjects)
        self._js = js

        try:
            info = js.stream_info(queue_name)
        except Exception:
            logger.warn("Stream not found, creating new stream", "stream", queue_name)
        else:
            logger.debug("Stream found", "info", info)

        config = StreamConfig(
            name=queue_name,
            description="Stream for " + queue_name,
            subjects=self.subjects,
            max_bytes=QUEUE_MAX_BYTES,
            storage="file",
            retention="workqueue",
        )
        try:
            js.create_or_update_stream(config)
        except Exception as exc:
            logger.error("Error creating JetStream stream: ", exc)
            raise StreamCreationError(f"failed to create stream '{queue_name}': {exc}") from exc
        logger.info(
            "Created work queue stream successfully",
            "streamName",
            queue_name,
            "subjects",
            list(self.subjects),
        )

    def new_message_queue(self, consumer_name: str) -> MessageQueue:
        """Create a durable consumer for <queue>.<consumer>.* and return its queue."""
        wildcard = f"{self.queue_name}.{consumer_name}.*"
        config = ConsumerConfig(
            name=consumer_name,
            durable=consumer_name,
            max_ack_pending=QUEUE_MAX_ACK_PENDING,
            ack_wait=QUEUE_ACK_WAIT,
            ack_policy="explicit",
            filter_subjects=(wildcard,),
            max_deliver=QUEUE_MAX_DELIVER,
        )
        logger.info(
            "Creating consumer for subject",
            "consumerName",
            consumer_name,
            "queueName",
            self.queue_name,
            "filterSubject",
            wildcard,
        )
        try:
            consumer = self._js.create_or_update_consumer(self.queue_name, config)
        except Exception as exc:
            logger.error("Error creating JetStream consumer: ", exc)
            raise ConsumerCreationError(
                f"failed to create consumer '{consumer_name}' on stream '{self.queue_name}': {exc}"
            ) from exc
        return MessageQueue(consumer_name, self._js, consumer)