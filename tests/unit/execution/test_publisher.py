"""Unit tests for enqueueing tasks with fair-share priority."""

from __future__ import annotations

from testbay.config.settings import BrokerSettings
from testbay.db.models import ExecutionStatus
from testbay.db.repositories import ExecutionRepository
from testbay.execution.publisher import TaskPublisher, build_task_queue
from testbay.execution.scheduler import FairShareScheduler


class FakeProducer:
    def __init__(self, published: list) -> None:
        self._published = published

    def publish(self, body, **kwargs) -> None:
        self._published.append((body, kwargs))


class FakeConnection:
    def __init__(self) -> None:
        self.published: list = []

    def Producer(self, serializer: str = "json"):
        assert serializer == "json"
        return FakeProducer(self.published)


TASK = {
    "taskId": "task-9",
    "organizationId": "org-1",
    "image": "tests:latest",
    "config": {"environment": "prod"},
}


def test_submit_creates_pending_record_and_publishes_with_priority(session_factory) -> None:
    executions = ExecutionRepository(session_factory)
    for index in range(3):
        executions.claim(
            organization_id="org-1",
            task_id=f"running-{index}",
            image="tests:latest",
            folder="all",
            config={},
            reports_base_url=None,
        )
    connection = FakeConnection()
    queue = build_task_queue(BrokerSettings(task_queue="test-tasks"))
    publisher = TaskPublisher(
        connection,
        queue=queue,
        scheduler=FairShareScheduler(executions.count_running),
        executions=executions,
    )

    priority = publisher.submit(TASK)

    assert priority == 4
    body, kwargs = connection.published[0]
    assert body["taskId"] == "task-9"
    assert kwargs["priority"] == 4
    assert kwargs["routing_key"] == "test-tasks"
    assert kwargs["delivery_mode"] == 2
    assert kwargs["declare"] == [queue]
    assert executions.get("org-1", "task-9").status is ExecutionStatus.PENDING


def test_submit_fails_open_when_counting_breaks() -> None:
    def _broken(_org: str) -> int:
        raise RuntimeError("db down")

    connection = FakeConnection()
    publisher = TaskPublisher(
        connection,
        queue=build_task_queue(BrokerSettings()),
        scheduler=FairShareScheduler(_broken),
    )

    assert publisher.submit(TASK) == 1
    assert connection.published[0][1]["priority"] == 1
