"""Slack Block Kit notifications for finished executions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

ANALYSIS_SNIPPET_CHARS = 150


@dataclass(frozen=True, slots=True)
class ExecutionSummary:
    """What the outbound channels need to know about a finished run."""

    task_id: str
    organization_id: str
    status: str
    folder: str
    environment: str
    trigger: str = "manual"
    analysis: Optional[str] = None


def _status_emoji(status: str) -> str:
    if status == "PASSED":
        return "🟢"
    if status == "FAILED":
        return "🔴"
    return "⚠️"


def build_slack_blocks(summary: ExecutionSummary, *, dashboard_base_url: str) -> list[dict[str, Any]]:
    emoji = _status_emoji(summary.status)
    folder = summary.folder or "all"
    deep_link = f"{dashboard_base_url.rstrip('/')}/?drawerId={summary.task_id}"
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"{emoji} Execution {summary.status} - {folder}",
                "emoji": True,
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Status:*\n{emoji} {summary.status}"},
                {"type": "mrkdwn", "text": f"*Triggered by:*\n{summary.trigger.upper()}"},
                {"type": "mrkdwn", "text": f"*Environment:*\n{summary.environment or 'N/A'}"},
                {"type": "mrkdwn", "text": f"*Folder:*\n{folder}"},
            ],
        },
    ]
    if summary.status == "FAILED" and summary.analysis:
        snippet = summary.analysis[:ANALYSIS_SNIPPET_CHARS]
        if len(summary.analysis) > ANALYSIS_SNIPPET_CHARS:
            snippet += "..."
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*AI Analysis:*\n{snippet}"}}
        )
    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View Investigation Hub", "emoji": True},
                    "url": deep_link,
                    "action_id": "view_investigation_hub",
                }
            ],
        }
    )
    return blocks


class SlackNotifier:
    """Post execution summaries to an incoming webhook; never raises."""

    def __init__(
        self,
        *,
        dashboard_base_url: str,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._dashboard_base_url = dashboard_base_url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def send(self, webhook_url: str, summary: ExecutionSummary) -> None:
        payload = {"blocks": build_slack_blocks(summary, dashboard_base_url=self._dashboard_base_url)}
        try:
            response = self._client.post(webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to deliver Slack notification: %s",
                exc,
                extra={"task_id": summary.task_id},
            )
            return
        if response.is_success:
            logger.info(
                "Slack notification delivered",
                extra={"task_id": summary.task_id, "status": summary.status},
            )
        else:
            logger.error(
                "Slack webhook returned a non-OK response",
                extra={"task_id": summary.task_id, "http_status": response.status_code},
            )

    def close(self) -> None:
        self._client.close()


__all__ = ["ExecutionSummary", "SlackNotifier", "build_slack_blocks"]
