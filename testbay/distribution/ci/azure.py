"""Azure DevOps pull request threads."""

from __future__ import annotations

from typing import Optional

import httpx

from testbay.distribution.ci.base import CiProvider, split_repository
from testbay.execution.task_contract import CiContext

API_VERSION = "7.0"


class AzureDevOpsProvider(CiProvider):
    source = "azure"

    def __init__(
        self,
        token: str,
        *,
        organization_url: Optional[str],
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(token, client=client, timeout_seconds=timeout_seconds)
        self._organization_url = (organization_url or "").rstrip("/")

    def _send_comment(self, context: CiContext, body: str) -> httpx.Response:
        if not self._organization_url:
            raise ValueError("AZURE_DEVOPS_ORG_URL is not configured")
        project, repo = split_repository(context.repository or "")
        url = (
            f"{self._organization_url}/{project}/_apis/git/repositories/{repo}"
            f"/pullRequests/{context.pr_number}/threads"
        )
        return self._client.post(
            url,
            params={"api-version": API_VERSION},
            json={
                "comments": [{"parentCommentId": 0, "content": body, "commentType": 1}],
                "status": 1,
            },
            auth=("", self._token),
        )
