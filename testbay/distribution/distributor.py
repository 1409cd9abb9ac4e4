"""Best-effort fan-out of finished executions to analysis, chat and CI."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote, urlencode

import httpx

from testbay.config.settings import CiSettings
from testbay.db.models import ExecutionStatus
from testbay.db.repositories import OrganizationProfile
from testbay.distribution.analysis import INSUFFICIENT_LOGS, TECHNICAL_ERROR, FailureAnalyzer
from testbay.distribution.ci import get_ci_provider
from testbay.distribution.notifier import ExecutionSummary, SlackNotifier
from testbay.execution.artifacts import ALLURE_REPORT, NATIVE_REPORT
from testbay.execution.metrics import WorkerMetrics
from testbay.execution.status import TestCounts
from testbay.execution.task_contract import TaskDescriptor
from testbay.security.report_tokens import ReportTokenService
from testbay.security.vault import SecretVault, resolve_stored_secret
from testbay.utils.logging import SecretRedactor

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_EVENTS: tuple[str, ...] = (
    ExecutionStatus.FAILED.value,
    ExecutionStatus.ERROR.value,
    ExecutionStatus.UNSTABLE.value,
)

OrganizationLookup = Callable[[str], Optional[OrganizationProfile]]


@dataclass(frozen=True, slots=True)
class FinishedExecution:
    """A run that reached a terminal status."""

    task: TaskDescriptor
    status: ExecutionStatus
    output: str
    analysis: Optional[str] = None
    test_counts: TestCounts = field(default_factory=TestCounts)
    artifacts: Mapping[str, bool] = field(default_factory=dict)


class ResultDistributor:
    """Attempt each outbound channel independently and discard the outcome.

    Every public method returns ``None`` and swallows its own failures, so a
    broken webhook or CI token can never change the task's terminal status
    or affect another channel.
    """

    def __init__(
        self,
        *,
        organizations: OrganizationLookup,
        analyzer: FailureAnalyzer,
        notifier: SlackNotifier,
        ci_settings: CiSettings,
        vault: Optional[SecretVault] = None,
        report_tokens: Optional[ReportTokenService] = None,
        reports_public_url: str = "http://localhost:8000",
        min_log_chars: int = 50,
        analysis_timeout_seconds: float = 120.0,
        redactor: Optional[SecretRedactor] = None,
        ci_client: Optional[httpx.Client] = None,
        metrics: Optional[WorkerMetrics] = None,
    ) -> None:
        self._organizations = organizations
        self._analyzer = analyzer
        self._notifier = notifier
        self._ci_settings = ci_settings
        self._vault = vault
        self._report_tokens = report_tokens
        self._reports_public_url = reports_public_url.rstrip("/")
        self._min_log_chars = min_log_chars
        self._analysis_timeout_seconds = analysis_timeout_seconds
        self._redactor = redactor or SecretRedactor()
        self._ci_client = ci_client
        self._metrics = metrics or WorkerMetrics()
        self._analysis_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="analysis")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _attempt(self, channel: str, action: Callable[..., Any], *args: Any) -> None:
        try:
            action(*args)
        except Exception:
            self._metrics.record_channel_failure(channel=channel)
            logger.exception("Result channel %s failed", channel)

    def _profile(self, organization_id: str) -> Optional[OrganizationProfile]:
        return self._organizations(organization_id)

    def ai_enabled_for(self, task: TaskDescriptor) -> bool:
        """Both the task and its organization must allow analysis.

        A failed organization lookup disables analysis.
        """

        if not task.ai_analysis_enabled:
            return False
        try:
            profile = self._profile(task.organization_id)
        except Exception as exc:
            logger.error(
                "Failed to load organization settings; AI analysis disabled: %s",
                exc,
                extra=task.log_context(),
            )
            return False
        if profile is None:
            logger.warning(
                "Organization not found; AI analysis disabled", extra=task.log_context()
            )
            return False
        return profile.ai_analysis_enabled

    def report_link(
        self, task: TaskDescriptor, artifacts: Mapping[str, bool]
    ) -> Optional[str]:
        if self._report_tokens is None:
            return None
        if artifacts.get(NATIVE_REPORT):
            target = f"{NATIVE_REPORT}/index.html"
        elif artifacts.get(ALLURE_REPORT):
            target = f"{ALLURE_REPORT}/index.html"
        else:
            target = "output.log"
        token = self._report_tokens.issue(
            organization_id=task.organization_id, task_id=task.task_id
        )
        path = "/".join(
            quote(part, safe="") for part in (task.organization_id, task.task_id)
        )
        return f"{self._reports_public_url}/reports/{path}/{target}?{urlencode({'token': token})}"

    # ------------------------------------------------------------------
    # AI analysis
    # ------------------------------------------------------------------
    def analyze_failure(self, task: TaskDescriptor, output: str) -> Optional[str]:
        """Return analysis text, a canned explanation, or ``None`` on timeout."""

        if len((output or "").strip()) <= self._min_log_chars:
            return INSUFFICIENT_LOGS
        logs = self._redactor.scrub(output)
        try:
            future = self._analysis_pool.submit(self._analyzer.analyze, logs, image=task.image)
        except RuntimeError:
            logger.exception("Analysis pool unavailable", extra=task.log_context())
            return TECHNICAL_ERROR
        try:
            return future.result(timeout=self._analysis_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "AI analysis timed out after %.0fs; finalizing without it",
                self._analysis_timeout_seconds,
                extra=task.log_context(),
            )
            return None
        except Exception:
            logger.exception("AI analysis crashed", extra=task.log_context())
            return TECHNICAL_ERROR

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    def notify_chat(self, execution: FinishedExecution) -> None:
        self._attempt("chat", self._notify_chat, execution)

    def _notify_chat(self, execution: FinishedExecution) -> None:
        task = execution.task
        profile = self._profile(task.organization_id)
        if profile is None:
            return
        webhook = resolve_stored_secret(profile.slack_webhook, self._vault)
        if not webhook:
            return
        events = (
            profile.notification_events
            if profile.notification_events is not None
            else DEFAULT_NOTIFICATION_EVENTS
        )
        if execution.status.value not in {str(event).upper() for event in events}:
            logger.debug(
                "Status not in notification allow-list",
                extra={**task.log_context(), "status": execution.status.value},
            )
            return
        self._notifier.send(
            webhook,
            ExecutionSummary(
                task_id=task.task_id,
                organization_id=task.organization_id,
                status=execution.status.value,
                folder=task.folder,
                environment=task.config.environment,
                trigger=task.ci_context.source if task.ci_context else "manual",
                analysis=execution.analysis,
            ),
        )

    # ------------------------------------------------------------------
    # CI
    # ------------------------------------------------------------------
    def comment_on_pull_request(self, execution: FinishedExecution) -> None:
        self._attempt("ci", self._comment_on_pull_request, execution)

    def _comment_on_pull_request(self, execution: FinishedExecution) -> None:
        task = execution.task
        context = task.ci_context
        if context is None or not context.has_pull_request:
            return
        profile = self._profile(task.organization_id)
        if profile is None:
            return
        token = resolve_stored_secret(profile.ci_tokens.get(context.source), self._vault)
        if not token:
            logger.info(
                "No CI token configured for source; skipping comment",
                extra={**task.log_context(), "ci_source": context.source},
            )
            return
        provider = get_ci_provider(
            context.source, token, settings=self._ci_settings, client=self._ci_client
        )
        if provider is None:
            return
        summary = execution.analysis or f"Execution finished with status {execution.status.value}."
        provider.post_summary_comment(
            context,
            summary,
            self.report_link(task, execution.artifacts),
            execution.test_counts,
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    def distribute(self, execution: FinishedExecution) -> None:
        self.notify_chat(execution)
        self.comment_on_pull_request(execution)

    def close(self) -> None:
        self._analysis_pool.shutdown(wait=False, cancel_futures=True)


__all__ = ["DEFAULT_NOTIFICATION_EVENTS", "FinishedExecution", "ResultDistributor"]
