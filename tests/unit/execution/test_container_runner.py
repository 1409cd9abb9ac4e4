"""Unit tests for the container runner lifecycle using fake docker clients."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest
from docker.errors import APIError, ImageNotFound, NotFound
from requests.exceptions import ReadTimeout

from testbay.execution.artifacts import ArtifactCollector, ArtifactMapping
from testbay.execution.container import (
    ContainerRunner,
    ContainerSpec,
    ContainerState,
    container_name_for,
)


def _tar_folder(name: str, files: dict[str, bytes]) -> bytes:
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as archive:
        folder = tarfile.TarInfo(name)
        folder.type = tarfile.DIRTYPE
        folder.mode = 0o755
        archive.addfile(folder)
        for path, data in files.items():
            info = tarfile.TarInfo(f"{name}/{path}")
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return raw.getvalue()


class FakeContainer:
    def __init__(
        self,
        *,
        logs: list[bytes] | None = None,
        exit_code: int = 0,
        wait_error: Exception | None = None,
        archives: dict[str, bytes] | None = None,
        start_error: Exception | None = None,
    ) -> None:
        self.id = "abc123"
        self._logs = logs or []
        self._exit_code = exit_code
        self._wait_error = wait_error
        self._archives = archives or {}
        self._start_error = start_error
        self.started = False
        self.stopped = False
        self.remove_calls = 0
        self.wait_timeout = None

    def start(self) -> None:
        if self._start_error is not None:
            raise self._start_error
        self.started = True

    def logs(self, **kwargs):
        return iter(self._logs)

    def wait(self, timeout=None):
        self.wait_timeout = timeout
        if self._wait_error is not None:
            raise self._wait_error
        return {"StatusCode": self._exit_code}

    def stop(self, timeout=None) -> None:
        self.stopped = True

    def remove(self, force: bool = False) -> None:
        assert force is True
        self.remove_calls += 1

    def get_archive(self, path: str):
        if path not in self._archives:
            raise NotFound(f"{path} not found")
        return iter([self._archives[path]]), {"name": Path(path).name}


class FakeImages:
    def __init__(self, *, present: bool = True, pull_error: Exception | None = None) -> None:
        self._present = present
        self._pull_error = pull_error
        self.pulled: list[str] = []

    def get(self, image: str):
        if not self._present:
            raise ImageNotFound(image)
        return object()

    def pull(self, image: str):
        if self._pull_error is not None:
            raise self._pull_error
        self.pulled.append(image)
        self._present = True
        return object()


class FakeContainers:
    def __init__(self, container: FakeContainer, *, existing: FakeContainer | None = None) -> None:
        self._container = container
        self._existing = existing
        self.create_kwargs: dict | None = None

    def get(self, name: str):
        if self._existing is None:
            raise NotFound(name)
        return self._existing

    def create(self, image: str, **kwargs):
        self.create_kwargs = {"image": image, **kwargs}
        return self._container


class FakeDockerClient:
    def __init__(self, container: FakeContainer, **images_kwargs) -> None:
        self.images = FakeImages(**images_kwargs)
        self.containers = FakeContainers(container)


def _spec(tmp_path: Path | None = None) -> ContainerSpec:
    return ContainerSpec(
        name=container_name_for("org-1", "task-1"),
        image="tests:latest",
        command=("/bin/sh", "/app/entrypoint.sh", "all"),
        environment={"CI": "true", "TASK_ID": "task-1"},
        reports_dir=tmp_path,
    )


def test_successful_run_streams_output_and_removes_container() -> None:
    container = FakeContainer(logs=[b"\x1b[32m3 passed\x1b[0m\n", b"done\n"], exit_code=0)
    client = FakeDockerClient(container)
    seen: list[str] = []

    result = ContainerRunner(docker_client=client, timeout_seconds=60).run(
        _spec(), on_output=[seen.append]
    )

    assert result.state is ContainerState.EXITED
    assert result.exit_code == 0
    assert result.output == "3 passed\ndone\n"
    assert "".join(seen) == result.output
    assert container.wait_timeout == 60
    assert container.remove_calls == 1
    assert client.containers.create_kwargs["command"] == ["/bin/sh", "/app/entrypoint.sh", "all"]
    assert client.containers.create_kwargs["name"] == "org_org-1_task_task-1"


def test_multibyte_output_split_across_chunks_is_decoded() -> None:
    encoded = "✓ ok\n".encode("utf-8")
    container = FakeContainer(logs=[encoded[:1], encoded[1:]])

    result = ContainerRunner(docker_client=FakeDockerClient(container)).run(_spec())

    assert result.output == "✓ ok\n"


def test_failing_output_callback_does_not_stop_capture() -> None:
    container = FakeContainer(logs=[b"line one\n", b"line two\n"])

    def _broken(_text: str) -> None:
        raise RuntimeError("producer down")

    result = ContainerRunner(docker_client=FakeDockerClient(container)).run(
        _spec(), on_output=[_broken]
    )

    assert result.output == "line one\nline two\n"


def test_timeout_stops_and_removes_container_once() -> None:
    container = FakeContainer(logs=[b"partial\n"], wait_error=ReadTimeout("timed out"))

    result = ContainerRunner(docker_client=FakeDockerClient(container), timeout_seconds=5).run(
        _spec()
    )

    assert result.state is ContainerState.TIMED_OUT
    assert result.timed_out
    assert result.exit_code is None
    assert "timed out after 5 seconds" in result.error
    assert result.output == "partial\n"
    assert container.stopped
    assert container.remove_calls == 1


def test_pull_failure_is_an_infra_error_without_container() -> None:
    container = FakeContainer()
    client = FakeDockerClient(container, present=False, pull_error=APIError("denied"))

    result = ContainerRunner(docker_client=client).run(_spec())

    assert result.state is ContainerState.INFRA_ERROR
    assert "Failed to pull image" in result.error
    assert client.containers.create_kwargs is None
    assert container.remove_calls == 0


def test_missing_image_is_pulled_when_not_present() -> None:
    container = FakeContainer()
    client = FakeDockerClient(container, present=False)

    ContainerRunner(docker_client=client).run(_spec())

    assert client.images.pulled == ["tests:latest"]


def test_start_failure_still_removes_container() -> None:
    container = FakeContainer(start_error=APIError("no such network"))

    result = ContainerRunner(docker_client=FakeDockerClient(container)).run(_spec())

    assert result.infra_error
    assert container.remove_calls == 1


def test_stale_container_with_same_name_is_removed_first() -> None:
    stale = FakeContainer()
    container = FakeContainer()
    client = FakeDockerClient(container)
    client.containers = FakeContainers(container, existing=stale)

    ContainerRunner(docker_client=client).run(_spec())

    assert stale.remove_calls == 1
    assert container.remove_calls == 1


def test_artifacts_are_copied_and_missing_folders_skipped(tmp_path: Path) -> None:
    archive = _tar_folder("playwright-report", {"index.html": b"<html>ok</html>"})
    container = FakeContainer(archives={"/app/playwright-report": archive})
    collector = ArtifactCollector(
        (
            ArtifactMapping("/app/playwright-report", "native-report"),
            ArtifactMapping("/app/allure-results", "allure-results"),
        ),
        allure_generate=False,
    )

    result = ContainerRunner(
        docker_client=FakeDockerClient(container), artifact_collector=collector
    ).run(_spec(tmp_path))

    assert result.artifacts == {"native-report": True, "allure-results": False}
    assert (tmp_path / "native-report" / "index.html").read_text() == "<html>ok</html>"
    assert container.remove_calls == 1


def test_artifact_extraction_failure_keeps_result_and_removes_container(tmp_path: Path) -> None:
    container = FakeContainer(archives={"/app/playwright-report": b"not a tar archive"})
    collector = ArtifactCollector(
        (ArtifactMapping("/app/playwright-report", "native-report"),), allure_generate=False
    )

    result = ContainerRunner(
        docker_client=FakeDockerClient(container), artifact_collector=collector
    ).run(_spec(tmp_path))

    assert result.state is ContainerState.EXITED
    assert result.artifacts == {"native-report": False}
    assert container.remove_calls == 1


def test_always_policy_falls_back_to_cached_image() -> None:
    container = FakeContainer()
    client = FakeDockerClient(container, present=True, pull_error=APIError("rate limited"))

    result = ContainerRunner(docker_client=client, pull_policy="always").run(_spec())

    assert result.state is ContainerState.EXITED


def test_container_name_rejects_ids_it_would_have_to_rewrite() -> None:
    assert container_name_for("acme_1", "task-1") == "org_acme_1_task_task-1"
    with pytest.raises(ValueError):
        container_name_for("acme 1", "task-1")
