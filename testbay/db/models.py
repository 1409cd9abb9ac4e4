"""SQLAlchemy models for execution records and tenant settings."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from testbay.db.base import Base


class ExecutionStatus(str, enum.Enum):
    """Lifecycle states of one task execution."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    UNSTABLE = "UNSTABLE"
    ANALYZING = "ANALYZING"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {
        ExecutionStatus.PASSED,
        ExecutionStatus.FAILED,
        ExecutionStatus.ERROR,
        ExecutionStatus.UNSTABLE,
    }
)
IN_FLIGHT_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {ExecutionStatus.RUNNING, ExecutionStatus.ANALYZING}
)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Execution(Base):
    """One task run, keyed by tenant and task id."""

    __tablename__ = "executions"
    __table_args__ = (
        UniqueConstraint("organization_id", "task_id", name="uq_executions_org_task"),
        Index("ix_executions_org_status", "organization_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    task_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(
            ExecutionStatus,
            name="executionstatus",
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ExecutionStatus.PENDING,
    )
    image: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    folder: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    output: Mapped[str] = mapped_column(Text, nullable=False, default="")
    analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artifacts: Mapped[dict[str, bool]] = mapped_column(JSON, nullable=False, default=dict)
    reports_base_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Organization(Base):
    """Tenant-level settings read by the execution worker."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ai_analysis_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    # Encrypted vault payload (object) or legacy plaintext URL (string).
    slack_webhook_url: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    slack_notification_events: Mapped[Optional[list[str]]] = mapped_column(
        JSON, nullable=True
    )
    # provider tag -> vault payload or plaintext token
    ci_tokens: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


__all__ = [
    "Execution",
    "ExecutionStatus",
    "IN_FLIGHT_STATUSES",
    "Organization",
    "TERMINAL_STATUSES",
]
