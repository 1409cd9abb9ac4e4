"""GitLab merge request notes."""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

import httpx

from testbay.distribution.ci.base import CiProvider
from testbay.execution.task_contract import CiContext


class GitLabProvider(CiProvider):
    source = "gitlab"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://gitlab.com",
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(token, client=client, timeout_seconds=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    def _send_comment(self, context: CiContext, body: str) -> httpx.Response:
        # Numeric project id or URL-encoded "group/project" path.
        project = quote((context.repository or "").strip(), safe="")
        if not project:
            raise ValueError("GitLab comments need a project id or path")
        return self._client.post(
            f"{self._base_url}/api/v4/projects/{project}/merge_requests/{context.pr_number}/notes",
            json={"body": body},
            headers={"PRIVATE-TOKEN": self._token},
        )
