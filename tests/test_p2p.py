from __future__ import annotations

from typing import Callable
from unittest import mock

import pytest

from mpcium.p2p import DirectMessaging, RetryConfig, retry
from mpcium.pubsub import Connection, Message, Subscription


class FakeSubscription(Subscription):
    def __init__(self, conn: FakeConnection, subject: str, handler: Callable) -> None:
        self.conn = conn
        self.subject = subject
        self.handler = handler

    def unsubscribe(self) -> None:
        self.conn.subs[self.subject].remove(self.handler)


class FakeConnection(Connection):
    def __init__(self, failures: int = 0, flush_error: Exception | None = None) -> None:
        self.subs: dict[str, list[Callable]] = {}
        self.published: list[Message] = []
        self.requests: list[tuple[str, bytes, float]] = []
        self.failures = failures
        self.flush_error = flush_error
        self.closed = False

    def publish(self, subject, data):
        self.publish_msg(Message(subject, data))

    def publish_msg(self, msg):
        self.published.append(msg)
        for handler in list(self.subs.get(msg.subject, [])):
            handler(msg)

    def subscribe(self, subject, handler):
        self.subs.setdefault(subject, []).append(handler)
        return FakeSubscription(self, subject, handler)

    def request(self, subject, data, timeout):
        self.requests.append((subject, data, timeout))
        if self.failures:
            self.failures -= 1
            raise TimeoutError(f"timeout {len(self.requests)}")
        return Message(subject, b"OK")

    def flush(self):
        if self.flush_error is not None:
            raise self.flush_error

    def close(self):
        self.closed = True

    @property
    def is_closed(self):
        return self.closed


def test_send_to_self_calls_all_handlers():
    dm = DirectMessaging(FakeConnection())
    first: list[bytes] = []
    second: list[bytes] = []
    dm.listen("node.a", first.append)
    dm.listen("node.a", second.append)
    dm.send_to_self("node.a", b"data")
    assert first == [b"data"]
    assert second == [b"data"]


def test_send_to_self_without_handlers_raises():
    dm = DirectMessaging(FakeConnection())
    with pytest.raises(LookupError, match="no handlers found for topic node.x"):
        dm.send_to_self("node.x", b"data")


def test_listen_replies_ok():
    conn = FakeConnection()
    dm = DirectMessaging(conn)
    received: list[bytes] = []
    dm.listen("node.a", received.append)
    conn.publish_msg(Message("node.a", b"ping", reply="inbox.1"))
    assert received == [b"ping"]
    assert conn.published[-1] == Message("inbox.1", b"OK")


def test_listen_flush_failure_unsubscribes():
    conn = FakeConnection(flush_error=OSError("down"))
    dm = DirectMessaging(conn)
    with pytest.raises(ConnectionError, match="flush after subscribe failed"):
        dm.listen("node.a", lambda data: None)
    assert conn.subs["node.a"] == []
    with pytest.raises(LookupError):
        dm.send_to_self("node.a", b"x")


def test_send_to_other_succeeds_first_time():
    conn = FakeConnection()
    reply = DirectMessaging(conn).send_to_other("node.b", b"msg")
    assert reply.data == b"OK"
    assert conn.requests == [("node.b", b"msg", 3.0)]


@mock.patch("mpcium.p2p.time.sleep")
def test_send_to_other_gives_up_after_three_attempts(sleep):
    conn = FakeConnection(failures=5)
    with pytest.raises(TimeoutError):
        DirectMessaging(conn).send_to_other("node.b", b"msg")
    assert len(conn.requests) == 3
    assert sleep.call_count == 2
    assert {call.args[0] for call in sleep.call_args_list} == {0.05}


@mock.patch("mpcium.p2p.time.sleep")
def test_send_to_other_recovers(sleep):
    conn = FakeConnection(failures=2)
    reply = DirectMessaging(conn).send_to_other("node.b", b"msg")
    assert reply.data == b"OK"
    assert len(conn.requests) == 3


@mock.patch("mpcium.p2p.time.sleep")
def test_send_with_retry_config(sleep):
    conn = FakeConnection(failures=10)
    seen: list[int] = []
    config = RetryConfig(
        retry_attempt=4,
        exponential_backoff=True,
        delay=0.01,
        on_retry=lambda n, exc: seen.append(n),
    )
    with pytest.raises(TimeoutError):
        DirectMessaging(conn).send_to_other_with_retry("node.c", b"m", config)
    assert len(conn.requests) == 4
    assert seen == [0, 1, 2, 3]
    waits = [call.args[0] for call in sleep.call_args_list]
    assert len(waits) == 3
    assert waits[1] == waits[0] * 2
    assert waits[2] == waits[1] * 2


@mock.patch("mpcium.p2p.time.sleep")
def test_send_with_default_retry_uses_jitter(sleep):
    conn = FakeConnection(failures=1)
    reply = DirectMessaging(conn).send_to_other_with_retry("node.c", b"m", RetryConfig())
    assert reply.data == b"OK"
    wait = sleep.call_args.args[0]
    assert 0.1 <= wait <= 0.1 + 0.08


def test_retry_returns_result_and_reports_failures():
    outcomes = iter([ValueError("a"), ValueError("b"), "done"])
    reported: list[tuple[int, str]] = []

    def operation():
        item = next(outcomes)
        if isinstance(item, Exception):
            raise item
        return item

    result = retry(
        operation,
        attempts=5,
        delay=0,
        exponential_backoff=False,
        max_jitter=0,
        on_retry=lambda n, exc: reported.append((n, str(exc))),
    )
    assert result == "done"
    assert reported == [(0, "a"), (1, "b")]


def test_retry_raises_last_error():
    calls: list[int] = []

    def operation():
        calls.append(1)
        raise KeyError(len(calls))

    with pytest.raises(KeyError) as info:
        retry(operation, attempts=3, delay=0, exponential_backoff=False, max_jitter=0)
    assert info.value.args == (3,)
    assert len(calls) == 3


def test_retry_rejects_zero_attempts():
    with pytest.raises(ValueError):
        retry(lambda: None, attempts=0)


@mock.patch("mpcium.p2p.time.sleep")
def test_retry_fixed_delay_is_constant(sleep):
    with pytest.raises(RuntimeError):
        retry(
            lambda: (_ for _ in ()).throw(RuntimeError("x")),
            attempts=4,
            delay=0.2,
            exponential_backoff=False,
            max_jitter=0,
        )
    assert [call.args[0] for call in sleep.call_args_list] == [0.2, 0.2, 0.2]