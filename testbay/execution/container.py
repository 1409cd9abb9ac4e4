"""Docker container lifecycle for a single task run."""

from __future__ import annotations

import codecs
import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout, RequestException

from testbay.execution.artifacts import ArtifactCollector
from testbay.execution.status import strip_ansi
from testbay.execution.task_contract import is_safe_identifier
from testbay.utils.logging import redact_environment

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]


class ContainerState(str, enum.Enum):
    """Lifecycle reached by a task container."""

    CREATED = "created"
    STARTED = "started"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    INFRA_ERROR = "infra_error"


class ContainerInfraError(RuntimeError):
    """Raised when the runtime cannot pull, create, start or wait on a container."""


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Everything needed to launch one task container."""

    name: str
    image: str
    command: tuple[str, ...]
    environment: Mapping[str, str]
    working_dir: str = "/app"
    labels: Mapping[str, str] = field(default_factory=dict)
    extra_hosts: Mapping[str, str] = field(default_factory=dict)
    reports_dir: Optional[Path] = None


@dataclass(frozen=True, slots=True)
class ContainerRunResult:
    """Outcome of a container run, including everything captured."""

    state: ContainerState
    output: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    artifacts: Mapping[str, bool] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def timed_out(self) -> bool:
        return self.state is ContainerState.TIMED_OUT

    @property
    def infra_error(self) -> bool:
        return self.state is ContainerState.INFRA_ERROR

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class OutputBuffer:
    """Append-only text buffer shared by the log streamer and the runner."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: list[str] = []

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._chunks.append(text)

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)


def container_name_for(organization_id: str, task_id: str) -> str:
    for value in (organization_id, task_id):
        if not is_safe_identifier(value):
            raise ValueError(f"{value!r} cannot be used in a container name")
    return f"org_{organization_id}_task_{task_id}"


class ContainerRunner:
    """Run one task container to completion and always remove it."""

    def __init__(
        self,
        *,
        docker_client: Optional[docker.DockerClient] = None,
        timeout_seconds: int = 1800,
        stop_timeout_seconds: int = 10,
        pull_policy: str = "if-not-present",
        artifact_collector: Optional[ArtifactCollector] = None,
        log_join_timeout_seconds: float = 10.0,
    ) -> None:
        self._client = docker_client or docker.from_env()
        self._timeout_seconds = timeout_seconds
        self._stop_timeout_seconds = stop_timeout_seconds
        self._pull_policy = pull_policy
        self._artifact_collector = artifact_collector
        self._log_join_timeout_seconds = log_join_timeout_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(
        self,
        spec: ContainerSpec,
        *,
        on_output: Sequence[OutputCallback] = (),
    ) -> ContainerRunResult:
        """Pull, create, start, stream, wait, extract, remove."""

        buffer = OutputBuffer()
        started_at = datetime.now(UTC)
        container: Any = None
        streamer: Optional[threading.Thread] = None
        state = ContainerState.CREATED
        exit_code: Optional[int] = None
        error: Optional[str] = None
        artifacts: dict[str, bool] = {}
        log_extra = {"container_name": spec.name, "image": spec.image}

        try:
            self._ensure_image(spec.image)
            self._cleanup_existing(spec.name)
            container = self._create(spec)
            state = ContainerState.CREATED

            self._start(container, spec)
            state = ContainerState.STARTED
            logger.info("Task container started", extra=log_extra)

            streamer = threading.Thread(
                target=self._stream_logs,
                args=(container, buffer, tuple(on_output)),
                name=f"logs-{spec.name}",
                daemon=True,
            )
            streamer.start()

            try:
                exit_code = self._wait(container)
                state = ContainerState.EXITED
            except (ReadTimeout, RequestsConnectionError):
                state = ContainerState.TIMED_OUT
                error = f"Execution timed out after {self._timeout_seconds} seconds"
                logger.warning("Task container timed out; stopping", extra=log_extra)
                self._stop(container)

            streamer.join(self._log_join_timeout_seconds)
            if spec.reports_dir is not None and self._artifact_collector is not None:
                artifacts = self._collect_artifacts(container, spec.reports_dir)
        except ContainerInfraError as exc:
            state = ContainerState.INFRA_ERROR
            error = str(exc)
            logger.error("Task container infrastructure failure: %s", exc, extra=log_extra)
        except (DockerException, RequestException) as exc:
            state = ContainerState.INFRA_ERROR
            error = f"Container runtime error: {exc}"
            logger.error("Container runtime error: %s", exc, extra=log_extra)
        finally:
            if container is not None:
                self._remove(container)
            if streamer is not None and streamer.is_alive():
                streamer.join(self._log_join_timeout_seconds)

        return ContainerRunResult(
            state=state,
            output=buffer.text(),
            exit_code=exit_code,
            error=error,
            artifacts=artifacts,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------
    def _ensure_image(self, image: str) -> None:
        if self._pull_policy == "always":
            try:
                self._client.images.pull(image)
                return
            except DockerException as exc:
                try:
                    self._client.images.get(image)
                except DockerException:
                    raise ContainerInfraError(f"Failed to pull image {image}: {exc}") from exc
                logger.warning(
                    "Image pull failed; using cached copy", extra={"image": image}
                )
                return

        try:
            self._client.images.get(image)
            return
        except ImageNotFound:
            logger.info("Image not found locally, pulling", extra={"image": image})
        except DockerException as exc:
            raise ContainerInfraError(f"Failed to inspect image {image}: {exc}") from exc

        try:
            self._client.images.pull(image)
        except DockerException as exc:
            raise ContainerInfraError(f"Failed to pull image {image}: {exc}") from exc

    def _cleanup_existing(self, name: str) -> None:
        try:
            existing = self._client.containers.get(name)
        except NotFound:
            return
        except DockerException as exc:  # pragma: no cover - docker SDK errors
            logger.warning("Failed to inspect existing container %s: %s", name, exc)
            return
        logger.info("Removing stale container", extra={"container_name": name})
        try:
            existing.remove(force=True)
        except NotFound:
            return
        except DockerException as exc:  # pragma: no cover
            logger.warning("Failed to remove stale container %s: %s", name, exc)

    def _create(self, spec: ContainerSpec) -> Any:
        try:
            return self._client.containers.create(
                spec.image,
                command=list(spec.command),
                name=spec.name,
                environment=dict(spec.environment),
                working_dir=spec.working_dir,
                labels=dict(spec.labels),
                extra_hosts=dict(spec.extra_hosts) or None,
                tty=False,
                auto_remove=False,
            )
        except DockerException as exc:
            logger.error(
                "Failed to create task container",
                extra={
                    "container_name": spec.name,
                    "environment": redact_environment(spec.environment),
                },
            )
            raise ContainerInfraError(f"Failed to create container: {exc}") from exc

    def _start(self, container: Any, spec: ContainerSpec) -> None:
        try:
            container.start()
        except DockerException as exc:
            raise ContainerInfraError(
                f"Failed to start container {spec.name}: {exc}"
            ) from exc

    def _wait(self, container: Any) -> int:
        result = container.wait(timeout=self._timeout_seconds)
        status_code = result.get("StatusCode") if isinstance(result, Mapping) else None
        if status_code is None:
            raise ContainerInfraError(f"Container wait returned no status code: {result!r}")
        return int(status_code)

    def _stop(self, container: Any) -> None:
        try:
            container.stop(timeout=self._stop_timeout_seconds)
        except NotFound:
            return
        except (DockerException, RequestException) as exc:  # pragma: no cover
            logger.warning("Error stopping container %s: %s", container.id, exc)

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except (DockerException, RequestException) as exc:
            logger.warning("Failed to remove container %s: %s", container.id, exc)

    def _collect_artifacts(self, container: Any, destination: Path) -> dict[str, bool]:
        assert self._artifact_collector is not None
        try:
            return self._artifact_collector.collect(container, destination)
        except Exception:
            logger.exception(
                "Artifact extraction failed", extra={"reports_dir": str(destination)}
            )
            return {}

    # ------------------------------------------------------------------
    # Log streaming
    # ------------------------------------------------------------------
    @staticmethod
    def _stream_logs(
        container: Any,
        buffer: OutputBuffer,
        callbacks: Sequence[OutputCallback],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            for chunk in container.logs(stream=True, follow=True, stdout=True, stderr=True):
                text = strip_ansi(decoder.decode(chunk))
                if not text:
                    continue
                buffer.append(text)
                for callback in callbacks:
                    try:
                        callback(text)
                    except Exception:
                        logger.exception("Output callback failed")
            tail = strip_ansi(decoder.decode(b"", final=True))
            buffer.append(tail)
        except (DockerException, RequestException) as exc:
            logger.warning("Log stream ended with error: %s", exc)


__all__ = [
    "ContainerInfraError",
    "ContainerRunResult",
    "ContainerRunner",
    "ContainerSpec",
    "ContainerState",
    "OutputBuffer",
    "container_name_for",
]
