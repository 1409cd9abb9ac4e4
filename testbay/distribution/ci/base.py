"""Shared contract for posting run summaries on pull requests."""

from __future__ import annotations

import abc
import logging
from typing import ClassVar, Optional

import httpx

from testbay.execution.status import TestCounts
from testbay.execution.task_contract import CiContext

logger = logging.getLogger(__name__)


def render_summary_comment(
    *,
    summary_text: str,
    artifact_link_url: Optional[str],
    test_counts: TestCounts,
) -> str:
    """Markdown body posted by every provider."""

    lines = [
        "## 🤖 Test Run AI Analysis Report",
        "",
        f"**Test Cycle Results**: {test_counts.passed}/{test_counts.total} Passed",
    ]
    if test_counts.failed or test_counts.flaky:
        lines.append(f"Failed: {test_counts.failed} · Flaky: {test_counts.flaky}")
    lines.extend(["", "### AI Summary", summary_text.strip() or "No analysis available."])
    if artifact_link_url:
        lines.extend(["", f"[View Full Report]({artifact_link_url})"])
    return "\n".join(lines)


class CiProvider(abc.ABC):
    """One source-control host able to post a summary comment."""

    source: ClassVar[str]

    def __init__(
        self,
        token: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._token = token
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def post_summary_comment(
        self,
        context: CiContext,
        summary_text: str,
        artifact_link_url: Optional[str],
        test_counts: TestCounts,
    ) -> None:
        """Post the summary; problems are logged, never raised."""

        if not context.has_pull_request:
            logger.info(
                "CI context has no pull request; skipping comment",
                extra={"ci_source": self.source},
            )
            return
        body = render_summary_comment(
            summary_text=summary_text,
            artifact_link_url=artifact_link_url,
            test_counts=test_counts,
        )
        try:
            response = self._send_comment(context, body)
            response.raise_for_status()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Failed to post %s pull request comment: %s",
                self.source,
                exc,
                extra={"repository": context.repository, "pr_number": context.pr_number},
            )
            return
        logger.info(
            "Posted pull request comment",
            extra={
                "ci_source": self.source,
                "repository": context.repository,
                "pr_number": context.pr_number,
            },
        )

    @abc.abstractmethod
    def _send_comment(self, context: CiContext, body: str) -> httpx.Response:
        """Issue the provider-specific request."""


def split_repository(repository: str) -> tuple[str, str]:
    """Split ``owner/name`` (or ``project/repo``) into its two parts."""

    owner, sep, name = repository.strip().strip("/").partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ValueError(f"repository must look like 'owner/name', got {repository!r}")
    return owner, name


__all__ = ["CiProvider", "render_summary_comment", "split_repository"]
