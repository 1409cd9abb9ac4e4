"""Queue topology and the enqueue side of the work queue."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from kombu import Connection, Exchange, Queue

from testbay.config.settings import BrokerSettings
from testbay.db.repositories import ExecutionRepository
from testbay.execution.metrics import WorkerMetrics
from testbay.execution.scheduler import FairShareScheduler
from testbay.execution.task_contract import TaskDescriptor

logger = logging.getLogger(__name__)


def build_task_queue(settings: BrokerSettings) -> Queue:
    """Durable priority queue shared by publisher and consumer declarations."""

    arguments: dict[str, Any] = {"x-max-priority": settings.max_priority}
    if settings.dead_letter_exchange:
        arguments["x-dead-letter-exchange"] = settings.dead_letter_exchange
    exchange = Exchange(settings.task_queue, type="direct", durable=True)
    return Queue(
        settings.task_queue,
        exchange=exchange,
        routing_key=settings.task_queue,
        durable=True,
        queue_arguments=arguments,
    )


class TaskPublisher:
    """Create the PENDING record and publish the task with its tenant priority."""

    def __init__(
        self,
        connection: Connection,
        *,
        queue: Queue,
        scheduler: FairShareScheduler,
        executions: Optional[ExecutionRepository] = None,
        metrics: Optional[WorkerMetrics] = None,
    ) -> None:
        self._connection = connection
        self._queue = queue
        self._scheduler = scheduler
        self._executions = executions
        self._metrics = metrics or WorkerMetrics()

    def submit(self, task: TaskDescriptor | Mapping[str, Any]) -> int:
        """Publish ``task`` and return the priority it was given."""

        descriptor = (
            task if isinstance(task, TaskDescriptor) else TaskDescriptor.model_validate(task)
        )
        if self._executions is not None:
            self._executions.create_pending(
                organization_id=descriptor.organization_id,
                task_id=descriptor.task_id,
                image=descriptor.image,
                folder=descriptor.folder,
                config=descriptor.config.to_payload(),
            )

        priority = self._scheduler.priority_for(descriptor.organization_id)
        producer = self._connection.Producer(serializer="json")
        producer.publish(
            descriptor.to_payload(),
            exchange=self._queue.exchange,
            routing_key=self._queue.routing_key,
            declare=[self._queue],
            priority=priority,
            delivery_mode=2,
            retry=True,
        )
        self._metrics.record_enqueued(
            organization_id=descriptor.organization_id, priority=priority
        )
        logger.info(
            "Task enqueued",
            extra={**descriptor.log_context(), "priority": priority},
        )
        return priority


__all__ = ["TaskPublisher", "build_task_queue"]
