"""Durable stream messaging: streams, consumers, publishing and fetching."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

from mpcium import logger
from mpcium.pubsub import Connection

DEFAULT_ACK_WAIT = 30.0
DEFAULT_MAX_DELIVERY_ATTEMPTS = 3
DEFAULT_CONSUMER_PREFIX = "consumer"
DEFAULT_STREAM_MAX_AGE = 180.0
DEFAULT_BACKOFF_DURATION = 30.0


class BrokerError(Exception):
    """Raised when the stream broker cannot complete an operation."""


class ConnectionClosedError(BrokerError):
    """The connection is closed."""


class StreamCreationError(BrokerError):
    """A stream could not be created."""


class ConsumerCreationError(BrokerError):
    """A consumer could not be created."""


@dataclass
class StreamConfig:
    """Settings of a stream on the server."""

    name: str
    description: str = ""
    subjects: tuple[str, ...] = ()
    max_age: float = 0.0
    max_bytes: int = 0
    storage: str = "file"
    retention: str = "limits"


@dataclass
class ConsumerConfig:
    """Settings of a durable consumer on a stream."""

    name: str
    durable: str = ""
    ack_policy: str = "explicit"
    max_deliver: int = 0
    backoff: tuple[float, ...] = ()
    deliver_policy: str = "all"
    filter_subject: str = ""
    filter_subjects: tuple[str, ...] = ()
    ack_wait: float = DEFAULT_ACK_WAIT
    max_ack_pending: int = 0


@dataclass
class BrokerConfig:
    """Options of a JetStreamBroker; description defaults to "Stream for <name>"."""

    description: str | None = None
    retention: str = "interest"
    storage: str = "file"
    max_age: float = DEFAULT_STREAM_MAX_AGE
    discard: str = "old"
    ack_wait: float = DEFAULT_ACK_WAIT
    max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS
    consumer_name_prefix: str = DEFAULT_CONSUMER_PREFIX
    deliver_policy: str = "all"
    backoff_durations: tuple[float, ...] = (DEFAULT_BACKOFF_DURATION,) * 3


class _ConsumeContext(Protocol):
    def stop(self) -> None: ...


class _Consumer(Protocol):
    def consume(self, handler: Callable[[Any], None]) -> _ConsumeContext: ...

    def fetch(self, batch_size: int, max_wait: float) -> Iterable[Any]: ...


class _JetStream(Protocol):
    def create_or_update_stream(self, config: StreamConfig) -> Any: ...

    def stream_info(self, name: str) -> Any: ...

    def create_or_update_consumer(self, stream_name: str, config: ConsumerConfig) -> _Consumer: ...

    def publish(self, subject: str, data: bytes, headers: dict[str, str] | None) -> Any: ...


def sanitize_consumer_name(name: str) -> str:
    """Turn an arbitrary string into a valid consumer name."""
    for old, new in ((".", "_"), (":", "_"), (" ", "_"), ("-", "_"), (">", "all"), ("*", "any")):
        name = name.replace(old, new)
    if name and not name[0].isalpha() and name[0] != "_":
        name = "_" + name
    return name


class BrokerSubscription:
    """A running push consumer."""

    def __init__(self, consumer: _Consumer, consume_context: _ConsumeContext | None) -> None:
        self.consumer = consumer
        self.consume_context = consume_context

    def unsubscribe(self) -> None:
        """Stop delivering messages to the handler."""
        if self.consume_context is not None:
            self.consume_context.stop()


class JetStreamBroker:
    """Publishes to and consumes from one durable stream."""

    def __init__(
        self,
        js: _JetStream,
        conn: Connection,
        stream_name: str,
        subjects: Iterable[str],
        config: BrokerConfig | None = None,
    ) -> None:
        self.config = config if config is not None else BrokerConfig()
        self.stream_name = stream_name
        self.subjects = tuple(subjects)
        self._js = js
        self._conn = conn
        self._ensure_stream_exists()
        logger.info("JetStream broker initialized successfully", "stream", stream_name)

    @property
    def description(self) -> str:
        if self.config.description is None:
            return f"Stream for {self.stream_name}"
        return self.config.description

    def _ensure_stream_exists(self) -> None:
        stream_config = StreamConfig(
            name=self.stream_name,
            description=self.description,
            subjects=self.subjects,
            max_age=self.config.max_age,
        )
        try:
            self._js.create_or_update_stream(stream_config)
        except Exception as exc:
            raise StreamCreationError(
                f"failed to create stream for stream '{self.stream_name}': {exc}"
            ) from exc

    def _check_open(self) -> None:
        if self._conn.is_closed:
            raise ConnectionClosedError("connection is closed")

    def publish_message(self, subject: str, data: bytes) -> None:
        """Publish a payload to a subject of the stream."""
        self._check_open()
        try:
            self._js.publish(subject, data, None)
        except Exception as exc:
            raise BrokerError(f"failed to publish message to subject {subject}: {exc}") from exc

    def _consumer(self, name: str, subject: str) -> _Consumer:
        consumer_config = ConsumerConfig(
            name=name,
            durable=name,
            ack_policy="explicit",
            max_deliver=self.config.max_delivery_attempts + 1,
            backoff=tuple(self.config.backoff_durations),
            deliver_policy=self.config.deliver_policy,
            filter_subject=subject,
            ack_wait=self.config.ack_wait,
        )
        try:
            return self._js.create_or_update_consumer(self.stream_name, consumer_config)
        except Exception as exc:
            raise ConsumerCreationError(
                f"failed to create consumer for consumer '{name}' "
                f"on stream '{self.stream_name}': {exc}"
            ) from exc

    def create_subscription(
        self, consumer_name: str, subject: str, handler: Callable[[Any], None]
    ) -> BrokerSubscription:
        """Create a durable consumer for subject and push its messages to handler."""
        self._check_open()
        name = sanitize_consumer_name(consumer_name)
        logger.info("Creating subscription", "consumer", name, "subject", subject)
        consumer = self._consumer(name, subject)
        try:
            context = consumer.consume(handler)
        except Exception as exc:
            raise BrokerError(
                f"failed to start consuming messages for consumer '{name}' "
                f"on stream '{self.stream_name}': {exc}"
            ) from exc
        logger.info("Subscription created successfully", "consumer", name, "subject", subject)
        return BrokerSubscription(consumer, context)

    def get_stream_info(self) -> Any:
        """Return the server's information about the stream."""
        try:
            return self._js.stream_info(self.stream_name)
        except Exception as exc:
            raise BrokerError(f"failed to get stream '{self.stream_name}': {exc}") from exc

    def fetch_messages(
        self,
        consumer_name: str,
        subject: str,
        batch_size: int,
        handler: Callable[[Any], None],
    ) -> int:
        """Pull up to batch_size messages, pass each to handler and return how many."""
        self._check_open()
        name = sanitize_consumer_name(consumer_name)
        logger.info("Creating fetch-based subscription", "consumer", name, "subject", subject)
        consumer = self._consumer(name, subject)
        try:
            messages = list(consumer.fetch(batch_size, self.config.ack_wait))
        except Exception as exc:
            raise BrokerError(f"failed to fetch messages for consumer '{name}': {exc}") from exc
        for msg in messages:
            handler(msg)
        logger.info(
            "Fetched messages successfully",
            "consumer",
            name,
            "subject",
            subject,
            "count",
            len(messages),
        )
        return len(messages)

    def close(self) -> None:
        """Close the underlying connection if it is still open."""
        if self._conn is not None and not self._conn.is_closed:
            self._conn.close()