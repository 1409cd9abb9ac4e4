"""GitHub issue comments on pull requests."""

from __future__ import annotations

from typing import Optional

import httpx

from testbay.distribution.ci.base import CiProvider, split_repository
from testbay.execution.task_contract import CiContext


class GitHubProvider(CiProvider):
    source = "github"

    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.github.com",
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(token, client=client, timeout_seconds=timeout_seconds)
        self._api_url = api_url.rstrip("/")

    def _send_comment(self, context: CiContext, body: str) -> httpx.Response:
        owner, repo = split_repository(context.repository or "")
        return self._client.post(
            f"{self._api_url}/repos/{owner}/{repo}/issues/{context.pr_number}/comments",
            json={"body": body},
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
