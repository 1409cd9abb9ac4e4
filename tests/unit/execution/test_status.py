"""Unit tests for execution outcome classification."""

from __future__ import annotations

import pytest

from testbay.db.models import ExecutionStatus
from testbay.execution.status import determine_execution_status, parse_test_counts, strip_ansi


@pytest.mark.parametrize(
    ("exit_code", "output", "expected"),
    [
        (0, "  10 passed (12.3s)", ExecutionStatus.PASSED),
        (1, "  8 passed\n  2 failed", ExecutionStatus.FAILED),
        (1, "=== 2 failed, 8 passed in 3.1s ===", ExecutionStatus.FAILED),
        (0, "  8 passed\n  2 failed", ExecutionStatus.UNSTABLE),
        (1, "  2 failed", ExecutionStatus.FAILED),
        (0, "  2 failed", ExecutionStatus.FAILED),
        (0, "  9 passed\n  1 flaky", ExecutionStatus.UNSTABLE),
        (1, "  1 failed\n  1 flaky", ExecutionStatus.FAILED),
        (0, "Retry #1\n  3 passed", ExecutionStatus.UNSTABLE),
        (2, "Error: something broke", ExecutionStatus.FAILED),
        (1, "Error: No tests found", ExecutionStatus.ERROR),
        (0, "FATAL ERROR: Reached heap limit", ExecutionStatus.FAILED),
        (0, "  3 passed\nKilled\n", ExecutionStatus.FAILED),
        (0, "worker process was not killed\n  3 passed\n", ExecutionStatus.PASSED),
        (0, "", ExecutionStatus.PASSED),
    ],
)
def test_determine_execution_status(exit_code: int, output: str, expected: ExecutionStatus) -> None:
    assert determine_execution_status(exit_code=exit_code, output=output) is expected


def test_timeouts_and_infrastructure_failures_are_errors() -> None:
    assert determine_execution_status(exit_code=None, output="", timed_out=True) is ExecutionStatus.ERROR
    assert determine_execution_status(exit_code=0, output="", infra_error=True) is ExecutionStatus.ERROR


def test_counts_ignore_ansi_colours() -> None:
    output = "\x1b[32m  5 passed\x1b[0m\n\x1b[31m  1 failed\x1b[0m\n  2 skipped"
    counts = parse_test_counts(output)

    assert strip_ansi("\x1b[1mbold\x1b[0m") == "bold"
    assert (counts.passed, counts.failed, counts.skipped, counts.total) == (5, 1, 2, 8)
