"""Queue subscriber that feeds task messages through the pipeline."""

from __future__ import annotations

import logging
import queue
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

from kombu import Connection, Queue
from kombu.mixins import ConsumerMixin

from testbay.execution.pipeline import PipelineResult, SettleAction, TaskPipeline

logger = logging.getLogger(__name__)


class TaskConsumer(ConsumerMixin):
    """Consume task messages with at most ``prefetch_count`` in flight.

    Pipelines run on worker threads. Their results are handed back through
    a settlement queue and acked or rejected on the consumer thread, which
    owns the channel.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        task_queue: Queue,
        pipeline: TaskPipeline,
        prefetch_count: int = 1,
    ) -> None:
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be at least 1")
        self.connection = connection
        self._task_queue = task_queue
        self._pipeline = pipeline
        self._prefetch_count = prefetch_count
        self._executor = ThreadPoolExecutor(
            max_workers=prefetch_count, thread_name_prefix="task"
        )
        self._settlements: "queue.Queue[tuple[Any, PipelineResult]]" = queue.Queue()

    # ------------------------------------------------------------------
    # ConsumerMixin hooks
    # ------------------------------------------------------------------
    def get_consumers(self, Consumer: Any, channel: Any) -> list[Any]:
        return [
            Consumer(
                queues=[self._task_queue],
                on_message=self.handle_message,
                prefetch_count=self._prefetch_count,
                accept=None,
            )
        ]

    def on_consume_ready(self, connection: Any, channel: Any, consumers: Any, **kwargs: Any) -> None:
        logger.info(
            "Waiting for tasks",
            extra={"queue": self._task_queue.name, "prefetch_count": self._prefetch_count},
        )

    def on_iteration(self) -> None:
        self.drain_settlements()

    def on_consume_end(self, connection: Any, channel: Any) -> None:
        self._executor.shutdown(wait=True)
        self.drain_settlements()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------
    def handle_message(self, message: Any) -> None:
        """Schedule the pipeline for ``message``; settlement happens later."""

        future = self._executor.submit(self._pipeline.process, message.body)
        future.add_done_callback(lambda done: self._enqueue_settlement(message, done))

    def _enqueue_settlement(self, message: Any, future: Future) -> None:
        try:
            result = future.result()
        except Exception:
            logger.exception("Task pipeline raised; acknowledging to avoid redelivery")
            result = PipelineResult(action=SettleAction.ACK, reason="pipeline_error")
        self._settlements.put((message, result))

    def drain_settlements(self, timeout: Optional[float] = None) -> int:
        """Ack or reject every finished delivery; return how many were settled."""

        settled = 0
        while True:
            try:
                if timeout is not None and settled == 0:
                    message, result = self._settlements.get(timeout=timeout)
                else:
                    message, result = self._settlements.get_nowait()
            except queue.Empty:
                return settled
            self.settle(message, result)
            settled += 1

    @staticmethod
    def settle(message: Any, result: PipelineResult) -> None:
        try:
            if result.action is SettleAction.REJECT:
                message.reject(requeue=False)
            else:
                message.ack()
        except Exception:
            logger.exception(
                "Failed to settle message",
                extra={"task_id": result.task_id, "action": result.action.value},
            )


__all__ = ["TaskConsumer"]
