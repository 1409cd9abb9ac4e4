"""Tenant fair-share priority computed at enqueue time."""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

MAX_PRIORITY = 10
MIN_PRIORITY = 1
PRIORITY_STEP = 2


def compute_priority(running_count: int) -> int:
    """Return ``max(1, 10 - 2 * running_count)``."""

    return max(MIN_PRIORITY, MAX_PRIORITY - PRIORITY_STEP * max(0, int(running_count)))


class FairShareScheduler:
    """Derive a message priority from the tenant's in-flight run count.

    Lookups that fail for any reason yield the floor priority so enqueueing
    is never blocked by a scheduling problem.
    """

    def __init__(self, running_counter: Callable[[str], int]) -> None:
        self._running_counter = running_counter

    def priority_for(self, organization_id: str) -> int:
        try:
            running = self._running_counter(organization_id)
        except Exception as exc:
            logger.warning(
                "Running-count lookup failed; using floor priority: %s",
                exc,
                extra={"organization_id": organization_id},
            )
            return MIN_PRIORITY
        priority = compute_priority(running)
        logger.debug(
            "Computed tenant priority",
            extra={
                "organization_id": organization_id,
                "running_count": running,
                "priority": priority,
            },
        )
        return priority


__all__ = [
    "FairShareScheduler",
    "MAX_PRIORITY",
    "MIN_PRIORITY",
    "compute_priority",
]
