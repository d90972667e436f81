"""Plain publish/subscribe messaging over a message-bus connection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from mpcium import logger


@dataclass
class Message:
    """A message on the bus: subject, payload, optional reply subject and headers."""

    subject: str
    data: bytes = b""
    reply: str = ""
    headers: dict[str, str] = field(default_factory=dict)


class Subscription(ABC):
    """An active subscription that can be cancelled."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop receiving messages."""


class Connection(ABC):
    """A connection to the message bus."""

    @abstractmethod
    def publish(self, subject: str, data: bytes) -> None:
        """Send a payload to a subject."""

    @abstractmethod
    def publish_msg(self, msg: Message) -> None:
        """Send a complete message, including its reply subject and headers."""

    @abstractmethod
    def subscribe(self, subject: str, handler: Callable[[Message], None]) -> Subscription:
        """Call handler for every message arriving on subject."""

    @abstractmethod
    def request(self, subject: str, data: bytes, timeout: float) -> Message:
        """Send a payload and wait up to timeout seconds for a single reply."""

    @abstractmethod
    def flush(self) -> None:
        """Wait until everything sent so far has reached the server."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """Whether the connection has been closed."""


class PubSub:
    """Fire-and-forget publishing and subscribing on a connection."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def publish(self, topic: str, message: bytes) -> None:
        """Publish a payload to a topic."""
        logger.debug("[NATS] Publishing message", "topic", topic)
        self._conn.publish(topic, message)

    def publish_with_reply(
        self, topic: str, reply: str, data: bytes, headers: dict[str, str] | None = None
    ) -> None:
        """Publish a payload with a reply subject and headers."""
        msg = Message(subject=topic, data=data, reply=reply, headers=dict(headers or {}))
        self._conn.publish_msg(msg)

    def subscribe(self, topic: str, handler: Callable[[Message], None]) -> Subscription:
        """Call handler with every message published on topic."""
        return self._conn.subscribe(topic, handler)