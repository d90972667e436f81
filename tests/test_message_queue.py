from __future__ import annotations

import pytest

from mpcium.broker import BrokerError, ConsumerCreationError, StreamCreationError
from mpcium.message_queue import (
    EnqueueOptions,
    MessageQueueManager,
    PermanentError,
)


class FakeContext:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeConsumer:
    def __init__(self, config) -> None:
        self.config = config
        self.handler = None
        self.context = None

    def consume(self, handler):
        self.handler = handler
        self.context = FakeContext()
        return self.context

    def fetch(self, batch_size, max_wait):
        return []


class FakeJetStream:
    def __init__(self, fail_stream=False, fail_consumer=False, fail_publish=False) -> None:
        self.fail_stream = fail_stream
        self.fail_consumer = fail_consumer
        self.fail_publish = fail_publish
        self.streams = {}
        self.consumers = {}
        self.published = []

    def create_or_update_stream(self, config):
        if self.fail_stream:
            raise RuntimeError("stream refused")
        self.streams[config.name] = config
        return config

    def stream_info(self, name):
        return self.streams[name]

    def create_or_update_consumer(self, stream_name, config):
        if self.fail_consumer:
            raise RuntimeError("consumer refused")
        consumer = FakeConsumer(config)
        self.consumers[config.name] = (stream_name, consumer)
        return consumer

    def publish(self, subject, data, headers):
        if self.fail_publish:
            raise RuntimeError("publish refused")
        self.published.append((subject, data, headers))


class FakeMsg:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.outcome = None

    def metadata(self):
        return {"sequence": 1}

    def ack(self):
        self.outcome = "ack"

    def nak(self):
        self.outcome = "nak"

    def term(self):
        self.outcome = "term"


def test_manager_creates_work_queue_stream():
    js = FakeJetStream()
    MessageQueueManager("mpc", ["mpc.*.*"], js)
    stream = js.streams["mpc"]
    assert stream.retention == "workqueue"
    assert stream.max_bytes == 10_485_760
    assert stream.description == "Stream for mpc"
    assert stream.subjects == ("mpc.*.*",)


def test_manager_stream_failure():
    with pytest.raises(StreamCreationError):
        MessageQueueManager("mpc", ["mpc.>"], FakeJetStream(fail_stream=True))


def test_new_message_queue_consumer_config():
    js = FakeJetStream()
    mq = MessageQueueManager("mpc", ["mpc.>"], js).new_message_queue("keygen")
    stream_name, consumer = js.consumers["keygen"]
    assert stream_name == "mpc"
    assert consumer.config.filter_subjects == ("mpc.keygen.*",)
    assert consumer.config.max_ack_pending == 1000
    assert consumer.config.max_deliver == 3
    assert mq.consumer_name == "keygen"


def test_new_message_queue_consumer_failure():
    manager = MessageQueueManager("mpc", ["mpc.>"], FakeJetStream(fail_consumer=True))
    with pytest.raises(ConsumerCreationError):
        manager.new_message_queue("keygen")


def test_enqueue_with_idempotent_key():
    js = FakeJetStream()
    mq = MessageQueueManager("mpc", ["mpc.>"], js).new_message_queue("keygen")
    mq.enqueue("mpc.keygen.w1", b"payload", EnqueueOptions(idempotent_key="w1"))
    assert js.published == [("mpc.keygen.w1", b"payload", {"Nats-Msg-Id": "w1"})]


def test_enqueue_without_options_has_no_headers():
    js = FakeJetStream()
    mq = MessageQueueManager("mpc", ["mpc.>"], js).new_message_queue("keygen")
    mq.enqueue("mpc.keygen.w1", b"payload", None)
    assert js.published[0][2] == {}


def test_enqueue_failure_raises():
    js = FakeJetStream(fail_publish=True)
    mq = MessageQueueManager("mpc", ["mpc.>"], js).new_message_queue("keygen")
    with pytest.raises(BrokerError, match="error enqueueing message"):
        mq.enqueue("mpc.keygen.w1", b"payload", None)


@pytest.fixture
def queue_and_consumer():
    js = FakeJetStream()
    mq = MessageQueueManager("mpc", ["mpc.>"], js).new_message_queue("signing")
    return mq, js.consumers["signing"][1]


def test_dequeue_acks_on_success(queue_and_consumer):
    mq, consumer = queue_and_consumer
    received = []
    mq.dequeue("mpc.signing.*", received.append)
    msg = FakeMsg(b"job")
    consumer.handler(msg)
    assert received == [b"job"]
    assert msg.outcome == "ack"


def test_dequeue_naks_on_error(queue_and_consumer):
    mq, consumer = queue_and_consumer

    def handler(data):
        raise RuntimeError("transient")

    mq.dequeue("mpc.signing.*", handler)
    msg = FakeMsg(b"job")
    consumer.handler(msg)
    assert msg.outcome == "nak"


def test_dequeue_terminates_on_permanent_error(queue_and_consumer):
    mq, consumer = queue_and_consumer

    def handler(data):
        raise PermanentError("bad job")

    mq.dequeue("mpc.signing.*", handler)
    msg = FakeMsg(b"job")
    consumer.handler(msg)
    assert msg.outcome == "term"


def test_close_stops_consumption(queue_and_consumer):
    mq, consumer = queue_and_consumer
    mq.dequeue("mpc.signing.*", lambda data: None)
    mq.close()
    assert consumer.context.stopped is True


def test_close_before_dequeue_starts_nothing(queue_and_consumer):
    mq, consumer = queue_and_consumer
    mq.close()
    assert consumer.context is None