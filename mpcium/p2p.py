"""Point-to-point messaging between nodes with retries."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from mpcium import logger
from mpcium.pubsub import Connection, Message, Subscription

T = TypeVar("T")

_REQUEST_TIMEOUT = 3.0
_DEFAULT_ATTEMPTS = 10
_DEFAULT_DELAY = 0.1
_SEND_ATTEMPTS = 3
_SEND_DELAY = 0.05
_RETRY_JITTER = 0.08
_MAX_SHIFT = 62


@dataclass
class RetryConfig:
    """How send_to_other_with_retry retries; zero values keep the defaults."""

    retry_attempt: int = 0
    exponential_backoff: bool = False
    delay: float = 0.0
    on_retry: Callable[[int, BaseException], None] | None = None


def retry(
    operation: Callable[[], T],
    attempts: int = _DEFAULT_ATTEMPTS,
    delay: float = _DEFAULT_DELAY,
    exponential_backoff: bool = True,
    max_jitter: float = 0.1,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call operation until it succeeds or attempts run out.

    After the n-th failure (counting from 0) on_retry(n, error) is called and,
    unless it was the last attempt, the call waits delay (doubled per attempt
    with exponential backoff) plus a random jitter up to max_jitter. The last
    error is raised when every attempt fails.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for n in range(attempts):
        try:
            return operation()
        except Exception as exc:
            if on_retry is not None:
                on_retry(n, exc)
            if n == attempts - 1:
                raise
            wait = delay * (2 ** min(n, _MAX_SHIFT)) if exponential_backoff else delay
            if max_jitter > 0:
                wait += random.uniform(0, max_jitter)
            time.sleep(wait)
    raise AssertionError("unreachable")


class DirectMessaging:
    """Request/reply messages to other nodes and local delivery to this one."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._handlers: dict[str, list[Callable[[bytes], None]]] = {}
        self._lock = threading.Lock()

    def send_to_self(self, topic: str, data: bytes) -> None:
        """Call every local handler for topic directly, bypassing the bus."""
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        if not handlers:
            raise LookupError(f"no handlers found for topic {topic}")
        for handler in handlers:
            handler(data)

    def _request(self, topic: str, data: bytes) -> Message:
        return self._conn.request(topic, data, _REQUEST_TIMEOUT)

    def send_to_other(self, topic: str, data: bytes) -> Message:
        """Send a request to another node, retrying three times at a fixed delay."""

        def log_retry(n: int, exc: BaseException) -> None:
            logger.error("Failed to send direct message", exc, "attempt", n + 1, "topic", topic)

        return retry(
            lambda: self._request(topic, data),
            attempts=_SEND_ATTEMPTS,
            delay=_SEND_DELAY,
            exponential_backoff=False,
            max_jitter=0,
            on_retry=log_retry,
        )

    def send_to_other_with_retry(self, topic: str, data: bytes, config: RetryConfig) -> Message:
        """Send a request to another node with a configurable retry policy."""
        return retry(
            lambda: self._request(topic, data),
            attempts=config.retry_attempt if config.retry_attempt > 0 else _DEFAULT_ATTEMPTS,
            delay=config.delay if config.delay > 0 else _DEFAULT_DELAY,
            exponential_backoff=True,
            max_jitter=0 if config.exponential_backoff else _RETRY_JITTER,
            on_retry=config.on_retry,
        )

    def listen(self, topic: str, handler: Callable[[bytes], None]) -> Subscription:
        """Handle requests on topic, replying "OK" to each."""

        def on_message(msg: Message) -> None:
            handler(msg.data)
            if not msg.reply:
                logger.error(
                    "Failed to respond to message", ValueError("message has no reply subject")
                )
                return
            try:
                self._conn.publish(msg.reply, b"OK")
            except Exception as exc:
                logger.error("Failed to respond to message", exc)

        sub = self._conn.subscribe(topic, on_message)
        try:
            self._conn.flush()
        except Exception as exc:
            try:
                sub.unsubscribe()
            except Exception as unsub_exc:
                logger.error("Failed to unsubscribe", unsub_exc)
            raise ConnectionError(f"flush after subscribe failed: {exc}") from exc

        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
        return sub