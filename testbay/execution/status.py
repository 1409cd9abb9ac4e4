"""Map a finished container run to a terminal execution status."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from testbay.db.models import ExecutionStatus

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_COUNT_PATTERNS = {
    "passed": re.compile(r"(\d+)\s+(?:passed|passing)\b", re.IGNORECASE),
    "failed": re.compile(r"(\d+)\s+(?:failed|failing)\b", re.IGNORECASE),
    "flaky": re.compile(r"(\d+)\s+flaky\b", re.IGNORECASE),
    "skipped": re.compile(r"(\d+)\s+(?:skipped|pending)\b", re.IGNORECASE),
}
_RETRY_PATTERN = re.compile(r"\bRetry\s+#\d+|\brerun\b|\bretrying\b", re.IGNORECASE)
_NO_TESTS_PATTERN = re.compile(r"no tests found|no tests ran|collected 0 items", re.IGNORECASE)
_FATAL_PATTERN = re.compile(
    r"FATAL ERROR|heap out of memory|Segmentation fault|^Killed[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)


def strip_ansi(text: str) -> str:
    return _ANSI_PATTERN.sub("", text)


@dataclass(frozen=True, slots=True)
class TestCounts:
    """Test totals scraped from runner summaries."""

    __test__ = False

    passed: int = 0
    failed: int = 0
    flaky: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.flaky + self.skipped


def parse_test_counts(output: str) -> TestCounts:
    """Sum the counts found in Playwright, pytest and mocha style summaries."""

    clean = strip_ansi(output or "")
    totals = {
        name: sum(int(match) for match in pattern.findall(clean))
        for name, pattern in _COUNT_PATTERNS.items()
    }
    return TestCounts(**totals)


def determine_execution_status(
    *,
    exit_code: Optional[int],
    output: str,
    timed_out: bool = False,
    infra_error: bool = False,
) -> ExecutionStatus:
    """Classify a run. Infrastructure failures and timeouts are ``ERROR``."""

    if infra_error or timed_out or exit_code is None:
        return ExecutionStatus.ERROR

    clean = strip_ansi(output or "")
    if _NO_TESTS_PATTERN.search(clean):
        return ExecutionStatus.ERROR
    if _FATAL_PATTERN.search(clean):
        return ExecutionStatus.FAILED

    if exit_code != 0:
        return ExecutionStatus.FAILED

    # Only a zero exit can be downgraded to UNSTABLE.
    counts = parse_test_counts(clean)
    if counts.flaky or _RETRY_PATTERN.search(clean):
        return ExecutionStatus.UNSTABLE
    if counts.failed and counts.passed:
        return ExecutionStatus.UNSTABLE
    if counts.failed:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PASSED


__all__ = ["TestCounts", "determine_execution_status", "parse_test_counts", "strip_ansi"]
