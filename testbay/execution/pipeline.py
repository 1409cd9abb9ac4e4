"""One task's unit of work: validate, sandbox, run, classify, distribute."""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Mapping, Optional, TypeVar

from testbay.db.models import ExecutionStatus
from testbay.db.repositories import INTERRUPTED_ERROR, ClaimOutcome, ExecutionRepository
from testbay.distribution.distributor import FinishedExecution, ResultDistributor
from testbay.distribution.producer import ProducerClient
from testbay.execution.artifacts import reports_dir_for
from testbay.execution.container import (
    ContainerRunner,
    ContainerRunResult,
    ContainerSpec,
    container_name_for,
)
from testbay.execution.metrics import WorkerMetrics
from testbay.execution.sandbox import (
    DEFAULT_HOST_ALIAS,
    DEFAULT_RESERVED_PREFIX,
    build_container_environment,
    computed_environment,
)
from testbay.execution.status import determine_execution_status, parse_test_counts
from testbay.execution.task_contract import (
    TaskDescriptor,
    TaskValidationError,
    parse_task_descriptor,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
OUTPUT_LOG_NAME = "output.log"


class SettleAction(str, enum.Enum):
    """How the consumer must settle the delivery."""

    ACK = "ack"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class PipelineResult:
    action: SettleAction
    task_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Runner knobs the pipeline applies to every task container."""

    reports_root: Path
    running_in_docker: bool = False
    host_alias: str = DEFAULT_HOST_ALIAS
    working_dir: str = "/app"
    entrypoint: str = "/app/entrypoint.sh"
    reserved_prefix: str = DEFAULT_RESERVED_PREFIX
    forward_keys: tuple[str, ...] = ()
    reports_public_url: Optional[str] = None


class _OutputMirror:
    """Append streamed output to the task's durable log file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: Optional[IO[str]] = None

    def write(self, text: str) -> None:
        if self._handle is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._path.open("a", encoding="utf-8")
        self._handle.write(text)
        self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class TaskPipeline:
    """Run each consumed message to a terminal status.

    Only payload problems produce ``REJECT``; everything that reaches the
    container runner is acknowledged, whatever its outcome, because a
    container run is not safe to repeat.
    """

    def __init__(
        self,
        *,
        runner: ContainerRunner,
        executions: ExecutionRepository,
        distributor: ResultDistributor,
        producer: ProducerClient,
        options: RunOptions,
        host_env: Optional[Mapping[str, str]] = None,
        metrics: Optional[WorkerMetrics] = None,
        platform: str = sys.platform,
    ) -> None:
        self._runner = runner
        self._executions = executions
        self._distributor = distributor
        self._producer = producer
        self._options = options
        self._host_env = dict(host_env or {})
        self._metrics = metrics or WorkerMetrics()
        self._platform = platform

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def process(self, body: bytes | str) -> PipelineResult:
        """Handle one raw message body and say how to settle it."""

        try:
            task = parse_task_descriptor(body)
        except TaskValidationError as exc:
            logger.error(
                "Rejecting task message: %s",
                exc,
                extra={"code": exc.code, "field": exc.field},
            )
            self._metrics.record_rejected(code=exc.code)
            return PipelineResult(action=SettleAction.REJECT, reason=exc.code)

        try:
            status = self.execute(task)
        except Exception:
            logger.exception("Task pipeline crashed", extra=task.log_context())
            self._persist(
                "finalize crashed task",
                self._executions.finalize,
                organization_id=task.organization_id,
                task_id=task.task_id,
                status=ExecutionStatus.ERROR,
                output="",
                error="Internal worker error",
            )
            status = ExecutionStatus.ERROR
        return PipelineResult(action=SettleAction.ACK, task_id=task.task_id, status=status)

    def execute(self, task: TaskDescriptor) -> Optional[ExecutionStatus]:
        """Run ``task``; returns ``None`` when an earlier delivery already finished it."""

        ctx = task.log_context()
        reports_dir = reports_dir_for(
            self._options.reports_root, task.organization_id, task.task_id
        )
        reports_url = self._reports_url(task)

        claim = self._persist(
            "claim execution",
            self._executions.claim,
            organization_id=task.organization_id,
            task_id=task.task_id,
            image=task.image,
            folder=task.folder,
            config=task.config.to_payload(),
            reports_base_url=reports_url,
        )
        if claim is ClaimOutcome.ALREADY_TERMINAL:
            logger.warning("Task already finished; skipping redelivery", extra=ctx)
            return None
        if claim is ClaimOutcome.INTERRUPTED:
            logger.error("Task was interrupted on a previous delivery", extra=ctx)
            self._producer.update_status(
                task_id=task.task_id,
                organization_id=task.organization_id,
                status=ExecutionStatus.ERROR.value,
                error=INTERRUPTED_ERROR,
            )
            return ExecutionStatus.ERROR

        logger.info("Task started", extra={**ctx, "image": task.image, "folder": task.folder})
        self._producer.update_status(
            task_id=task.task_id,
            organization_id=task.organization_id,
            status=ExecutionStatus.RUNNING.value,
            image=task.image,
            reportsBaseUrl=reports_url,
        )

        result = self._run_container(task, reports_dir)
        status = determine_execution_status(
            exit_code=result.exit_code,
            output=result.output,
            timed_out=result.timed_out,
            infra_error=result.infra_error,
        )
        if result.infra_error:
            self._metrics.record_infra_error(organization_id=task.organization_id)

        analysis: Optional[str] = None
        if status is ExecutionStatus.FAILED and self._distributor.ai_enabled_for(task):
            self._persist(
                "mark analyzing",
                self._executions.mark_analyzing,
                organization_id=task.organization_id,
                task_id=task.task_id,
                output=result.output,
            )
            self._producer.update_status(
                task_id=task.task_id,
                organization_id=task.organization_id,
                status=ExecutionStatus.ANALYZING.value,
            )
            analysis = self._distributor.analyze_failure(task, result.output)

        artifacts = dict(result.artifacts)
        self._persist(
            "finalize execution",
            self._executions.finalize,
            organization_id=task.organization_id,
            task_id=task.task_id,
            status=status,
            output=result.output,
            analysis=analysis,
            error=result.error,
            artifacts=artifacts,
            finished_at=result.finished_at,
        )
        self._metrics.record_finished(
            organization_id=task.organization_id,
            image=task.image,
            status=status.value,
            duration_seconds=result.duration_seconds,
        )
        self._producer.update_status(
            task_id=task.task_id,
            organization_id=task.organization_id,
            status=status.value,
            output=result.output,
            analysis=analysis,
            error=result.error,
            reportsBaseUrl=reports_url,
            image=task.image,
            command=task.command or None,
        )
        logger.info(
            "Task finished",
            extra={**ctx, "status": status.value, "duration_seconds": result.duration_seconds},
        )

        self._distributor.distribute(
            FinishedExecution(
                task=task,
                status=status,
                output=result.output,
                analysis=analysis,
                test_counts=parse_test_counts(result.output),
                artifacts=artifacts,
            )
        )
        return status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def build_environment(self, task: TaskDescriptor) -> dict[str, str]:
        options = self._options
        return build_container_environment(
            task_env=task.config.env_vars,
            computed=computed_environment(
                task_id=task.task_id,
                base_url=task.config.base_url,
                running_in_container=options.running_in_docker,
                host_alias=options.host_alias,
            ),
            forward_keys=options.forward_keys,
            host_env=self._host_env,
            reserved_prefix=options.reserved_prefix,
        )

    def build_spec(self, task: TaskDescriptor, reports_dir: Path) -> ContainerSpec:
        options = self._options
        extra_hosts: dict[str, str] = {}
        if options.running_in_docker and self._platform.startswith("linux"):
            extra_hosts[options.host_alias] = "host-gateway"
        return ContainerSpec(
            name=container_name_for(task.organization_id, task.task_id),
            image=task.image,
            command=("/bin/sh", options.entrypoint, task.folder),
            environment=self.build_environment(task),
            working_dir=options.working_dir,
            labels={
                "testbay.organization": task.organization_id,
                "testbay.task": task.task_id,
            },
            extra_hosts=extra_hosts,
            reports_dir=reports_dir,
        )

    def _run_container(self, task: TaskDescriptor, reports_dir: Path) -> ContainerRunResult:
        spec = self.build_spec(task, reports_dir)
        mirror = _OutputMirror(reports_dir / OUTPUT_LOG_NAME)
        callbacks: list[Callable[[str], None]] = [mirror.write]
        if self._producer.enabled:
            callbacks.append(
                lambda text: self._producer.send_log(
                    task_id=task.task_id, organization_id=task.organization_id, log=text
                )
            )
        try:
            return self._runner.run(spec, on_output=callbacks)
        finally:
            mirror.close()

    def _reports_url(self, task: TaskDescriptor) -> Optional[str]:
        base = self._options.reports_public_url
        if not base:
            return None
        return f"{base.rstrip('/')}/reports/{task.organization_id}/{task.task_id}/"

    @staticmethod
    def _persist(description: str, action: Callable[..., T], **kwargs: Any) -> Optional[T]:
        try:
            return action(**kwargs)
        except Exception:
            logger.exception(
                "Failed to %s",
                description,
                extra={
                    "task_id": kwargs.get("task_id"),
                    "organization_id": kwargs.get("organization_id"),
                },
            )
            return None


__all__ = ["PipelineResult", "RunOptions", "SettleAction", "TaskPipeline"]
