"""Unit tests for message settlement in the task consumer."""

from __future__ import annotations

import threading

import pytest
from kombu import Connection

from testbay.config.settings import BrokerSettings
from testbay.execution.consumer import TaskConsumer
from testbay.execution.pipeline import PipelineResult, SettleAction
from testbay.execution.publisher import build_task_queue


class FakeMessage:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.acked = False
        self.rejected_with: bool | None = None

    def ack(self) -> None:
        self.acked = True

    def reject(self, requeue: bool = False) -> None:
        self.rejected_with = requeue


class FakePipeline:
    def __init__(self, results: dict[bytes, PipelineResult | Exception]) -> None:
        self._results = results
        self.thread_names: list[str] = []

    def process(self, body: bytes) -> PipelineResult:
        self.thread_names.append(threading.current_thread().name)
        outcome = self._results[body]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def task_queue():
    return build_task_queue(BrokerSettings(task_queue="test-tasks"))


def _consumer(pipeline, task_queue, prefetch: int = 1) -> TaskConsumer:
    return TaskConsumer(
        Connection("memory://"),
        task_queue=task_queue,
        pipeline=pipeline,
        prefetch_count=prefetch,
    )


def test_processed_message_is_acked_on_consumer_thread(task_queue) -> None:
    pipeline = FakePipeline({b"ok": PipelineResult(action=SettleAction.ACK, task_id="t1")})
    consumer = _consumer(pipeline, task_queue)
    message = FakeMessage(b"ok")

    consumer.handle_message(message)
    assert consumer.drain_settlements(timeout=5) == 1

    assert message.acked
    assert message.rejected_with is None
    assert pipeline.thread_names[0].startswith("task")


def test_rejected_message_is_dead_lettered_without_requeue(task_queue) -> None:
    pipeline = FakePipeline({b"bad": PipelineResult(action=SettleAction.REJECT, reason="INVALID_TASK")})
    consumer = _consumer(pipeline, task_queue)
    message = FakeMessage(b"bad")

    consumer.handle_message(message)
    consumer.drain_settlements(timeout=5)

    assert message.rejected_with is False
    assert not message.acked


def test_pipeline_exception_is_still_acked(task_queue) -> None:
    consumer = _consumer(FakePipeline({b"boom": RuntimeError("crash")}), task_queue)
    message = FakeMessage(b"boom")

    consumer.handle_message(message)
    consumer.drain_settlements(timeout=5)

    assert message.acked


def test_consume_end_waits_for_in_flight_tasks(task_queue) -> None:
    pipeline = FakePipeline(
        {
            b"a": PipelineResult(action=SettleAction.ACK),
            b"b": PipelineResult(action=SettleAction.ACK),
        }
    )
    consumer = _consumer(pipeline, task_queue, prefetch=2)
    messages = [FakeMessage(b"a"), FakeMessage(b"b")]

    for message in messages:
        consumer.handle_message(message)
    consumer.on_consume_end(None, None)

    assert all(message.acked for message in messages)


def test_consumer_declares_queue_with_prefetch(task_queue) -> None:
    captured = {}

    def _consumer_factory(**kwargs):
        captured.update(kwargs)
        return kwargs

    consumer = _consumer(FakePipeline({}), task_queue, prefetch=3)
    consumer.get_consumers(_consumer_factory, channel=None)

    assert captured["queues"] == [task_queue]
    assert captured["prefetch_count"] == 3
    assert captured["on_message"] == consumer.handle_message


def test_prefetch_must_be_positive(task_queue) -> None:
    with pytest.raises(ValueError):
        _consumer(FakePipeline({}), task_queue, prefetch=0)


def test_task_queue_is_a_durable_priority_queue() -> None:
    queue = build_task_queue(
        BrokerSettings(task_queue="runs", max_priority=10, dead_letter_exchange="runs.dlx")
    )

    assert queue.name == "runs"
    assert queue.routing_key == "runs"
    assert queue.durable
    assert queue.queue_arguments == {"x-max-priority": 10, "x-dead-letter-exchange": "runs.dlx"}
