"""Persistence operations for execution records and organizations."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from testbay.db.base import session_scope
from testbay.db.models import (
    IN_FLIGHT_STATUSES,
    Execution,
    ExecutionStatus,
    Organization,
)

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Execution interrupted before completion; the worker was lost mid-run."


class ClaimOutcome(str, enum.Enum):
    """Result of taking ownership of a consumed task."""

    CLAIMED = "claimed"
    ALREADY_TERMINAL = "already_terminal"
    INTERRUPTED = "interrupted"


class ExecutionRepository:
    """Status transitions for execution records, always scoped by tenant."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _key(organization_id: str, task_id: str):
        return (
            Execution.organization_id == organization_id,
            Execution.task_id == task_id,
        )

    def get(self, organization_id: str, task_id: str) -> Optional[Execution]:
        with session_scope(self._session_factory) as session:
            return session.scalars(
                select(Execution).where(*self._key(organization_id, task_id))
            ).one_or_none()

    def create_pending(
        self,
        *,
        organization_id: str,
        task_id: str,
        image: Optional[str] = None,
        folder: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Insert a PENDING record; return ``False`` when one already exists."""

        with session_scope(self._session_factory) as session:
            existing = session.scalars(
                select(Execution.id).where(*self._key(organization_id, task_id))
            ).one_or_none()
            if existing is not None:
                return False
            session.add(
                Execution(
                    organization_id=organization_id,
                    task_id=task_id,
                    status=ExecutionStatus.PENDING,
                    image=image,
                    folder=folder,
                    config=dict(config or {}),
                    output="",
                    artifacts={},
                )
            )
        return True

    def claim(
        self,
        *,
        organization_id: str,
        task_id: str,
        image: str,
        folder: str,
        config: Mapping[str, Any],
        reports_base_url: Optional[str],
        started_at: Optional[datetime] = None,
    ) -> ClaimOutcome:
        """Move a task to RUNNING unless an earlier delivery already owned it."""

        started = started_at or datetime.now(UTC)
        values = {
            "status": ExecutionStatus.RUNNING,
            "image": image,
            "folder": folder,
            "config": dict(config),
            "started_at": started,
            "finished_at": None,
            "reports_base_url": reports_base_url,
        }
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(Execution)
                .where(
                    *self._key(organization_id, task_id),
                    Execution.status == ExecutionStatus.PENDING,
                )
                .values(**values)
            )
            if result.rowcount == 1:
                return ClaimOutcome.CLAIMED

            current = session.scalars(
                select(Execution).where(*self._key(organization_id, task_id))
            ).one_or_none()
            if current is None:
                session.add(
                    Execution(
                        organization_id=organization_id,
                        task_id=task_id,
                        output="",
                        artifacts={},
                        **values,
                    )
                )
                return ClaimOutcome.CLAIMED
            if current.status in IN_FLIGHT_STATUSES:
                current.status = ExecutionStatus.ERROR
                current.error = INTERRUPTED_ERROR
                current.finished_at = datetime.now(UTC)
                return ClaimOutcome.INTERRUPTED
            return ClaimOutcome.ALREADY_TERMINAL

    def mark_analyzing(self, *, organization_id: str, task_id: str, output: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(Execution)
                .where(*self._key(organization_id, task_id))
                .values(status=ExecutionStatus.ANALYZING, output=output)
            )

    def finalize(
        self,
        *,
        organization_id: str,
        task_id: str,
        status: ExecutionStatus,
        output: str,
        analysis: Optional[str] = None,
        error: Optional[str] = None,
        artifacts: Optional[Mapping[str, bool]] = None,
        finished_at: Optional[datetime] = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal execution status")
        with session_scope(self._session_factory) as session:
            session.execute(
                update(Execution)
                .where(*self._key(organization_id, task_id))
                .values(
                    status=status,
                    output=output,
                    analysis=analysis,
                    error=error,
                    artifacts=dict(artifacts or {}),
                    finished_at=finished_at or datetime.now(UTC),
                )
            )

    def count_running(self, organization_id: str) -> int:
        with session_scope(self._session_factory) as session:
            count = session.scalar(
                select(func.count(Execution.id)).where(
                    Execution.organization_id == organization_id,
                    Execution.status == ExecutionStatus.RUNNING,
                )
            )
        return int(count or 0)


@dataclass(frozen=True, slots=True)
class OrganizationProfile:
    """Tenant settings consumed by the result distributor."""

    organization_id: str
    ai_analysis_enabled: bool = True
    slack_webhook: Any = None
    notification_events: Optional[tuple[str, ...]] = None
    ci_tokens: Mapping[str, Any] = field(default_factory=dict)


class OrganizationRepository:
    """Read tenant settings and maintain stored webhook secrets."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_profile(self, organization_id: str) -> Optional[OrganizationProfile]:
        with session_scope(self._session_factory) as session:
            org = session.get(Organization, organization_id)
            if org is None:
                return None
            events = org.slack_notification_events
            return OrganizationProfile(
                organization_id=org.id,
                ai_analysis_enabled=bool(org.ai_analysis_enabled),
                slack_webhook=org.slack_webhook_url,
                notification_events=tuple(events) if events is not None else None,
                ci_tokens=dict(org.ci_tokens or {}),
            )

    def list_plaintext_webhooks(self) -> Sequence[tuple[str, str]]:
        """Return ``(organization_id, url)`` pairs still stored unencrypted."""

        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(Organization.id, Organization.slack_webhook_url).where(
                    Organization.slack_webhook_url.is_not(None)
                )
            ).all()
        return [
            (org_id, value.strip())
            for org_id, value in rows
            if isinstance(value, str)
            and value.strip()
            and not value.strip().startswith("{")
        ]

    def set_slack_webhook(self, organization_id: str, stored: Any) -> None:
        with session_scope(self._session_factory) as session:
            org = session.get(Organization, organization_id)
            if org is None:
                raise LookupError(f"Organization {organization_id} does not exist")
            org.slack_webhook_url = stored


__all__ = [
    "ClaimOutcome",
    "ExecutionRepository",
    "INTERRUPTED_ERROR",
    "OrganizationProfile",
    "OrganizationRepository",
]
