"""Copy report folders out of finished task containers."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from docker.errors import DockerException, NotFound

from testbay.execution.task_contract import is_safe_identifier

logger = logging.getLogger(__name__)

NATIVE_REPORT = "native-report"
ALLURE_RESULTS = "allure-results"
ALLURE_REPORT = "allure-report"


@dataclass(frozen=True, slots=True)
class ArtifactMapping:
    """A folder inside the container and the name it gets on the host."""

    container_path: str
    alias: str


DEFAULT_ARTIFACT_MAPPINGS: tuple[ArtifactMapping, ...] = (
    ArtifactMapping("/app/playwright-report", NATIVE_REPORT),
    ArtifactMapping("/app/pytest-report", NATIVE_REPORT),
    ArtifactMapping("/app/mochawesome-report", NATIVE_REPORT),
    ArtifactMapping("/app/allure-results", ALLURE_RESULTS),
    ArtifactMapping("/app/allure-report", ALLURE_REPORT),
)


def _path_segment(value: str) -> str:
    if not is_safe_identifier(value):
        raise ValueError(f"{value!r} cannot be used as a report path segment")
    return value


def reports_dir_for(root: Path, organization_id: str, task_id: str) -> Path:
    """Directory holding one task's log file and report folders."""

    return Path(root) / _path_segment(organization_id) / _path_segment(task_id)


class ArtifactCollector:
    """Extract declared folders from a container into the task's report dir."""

    def __init__(
        self,
        mappings: Sequence[ArtifactMapping] = DEFAULT_ARTIFACT_MAPPINGS,
        *,
        allure_generate: bool = True,
        allure_command: str = "allure",
        allure_timeout_seconds: int = 300,
    ) -> None:
        self._mappings = tuple(mappings)
        self._allure_generate = allure_generate
        self._allure_command = allure_command
        self._allure_timeout_seconds = allure_timeout_seconds

    def collect(self, container: Any, destination: Path) -> dict[str, bool]:
        """Copy every mapped folder that exists; return alias presence flags."""

        destination.mkdir(parents=True, exist_ok=True)
        presence = {mapping.alias: False for mapping in self._mappings}
        for mapping in self._mappings:
            try:
                if self._copy_folder(container, mapping, destination):
                    presence[mapping.alias] = True
            except NotFound:
                continue
            except (DockerException, tarfile.TarError, OSError) as exc:
                logger.warning(
                    "Failed to extract %s from container: %s",
                    mapping.container_path,
                    exc,
                    extra={"container_path": mapping.container_path},
                )

        if presence.get(ALLURE_RESULTS) and not presence.get(ALLURE_REPORT):
            presence[ALLURE_REPORT] = self._generate_allure_report(destination)
        return presence

    def _copy_folder(self, container: Any, mapping: ArtifactMapping, destination: Path) -> bool:
        chunks, _stat = container.get_archive(mapping.container_path)
        with tempfile.TemporaryDirectory(dir=destination, prefix=".extract-") as staging:
            with tempfile.TemporaryFile() as buffer:
                for chunk in chunks:
                    buffer.write(chunk)
                buffer.seek(0)
                with tarfile.open(fileobj=buffer, mode="r:*") as archive:
                    archive.extractall(staging, filter="data")

            extracted = Path(staging) / Path(mapping.container_path).name
            if not extracted.exists():
                return False
            target = destination / mapping.alias
            if target.exists():
                shutil.rmtree(target)
            shutil.move(str(extracted), str(target))
        logger.debug(
            "Copied %s to %s", mapping.container_path, target, extra={"alias": mapping.alias}
        )
        return True

    def _generate_allure_report(self, destination: Path) -> bool:
        if not self._allure_generate:
            return False
        results_dir = destination / ALLURE_RESULTS
        report_dir = destination / ALLURE_REPORT
        command = [
            self._allure_command,
            "generate",
            str(results_dir),
            "--clean",
            "-o",
            str(report_dir),
        ]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._allure_timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Allure report generation could not run: %s", exc)
            return False
        if completed.returncode != 0:
            logger.warning(
                "Allure report generation failed with exit code %s",
                completed.returncode,
                extra={"stderr": (completed.stderr or "")[-2000:]},
            )
            return False
        return report_dir.exists()


__all__ = [
    "ALLURE_REPORT",
    "ALLURE_RESULTS",
    "ArtifactCollector",
    "ArtifactMapping",
    "DEFAULT_ARTIFACT_MAPPINGS",
    "NATIVE_REPORT",
    "reports_dir_for",
]
