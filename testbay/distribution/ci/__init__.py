"""Pull request comment providers selected by CI source tag."""

from __future__ import annotations

from typing import Optional

import httpx

from testbay.config.settings import CiSettings
from testbay.distribution.ci.azure import AzureDevOpsProvider
from testbay.distribution.ci.base import CiProvider, render_summary_comment
from testbay.distribution.ci.github import GitHubProvider
from testbay.distribution.ci.gitlab import GitLabProvider


def get_ci_provider(
    source: Optional[str],
    token: str,
    *,
    settings: CiSettings,
    client: Optional[httpx.Client] = None,
) -> Optional[CiProvider]:
    """Return the provider for ``source``; unknown tags have none."""

    tag = (source or "").strip().lower()
    if tag == GitHubProvider.source:
        return GitHubProvider(token, api_url=settings.github_api_url, client=client)
    if tag == GitLabProvider.source:
        return GitLabProvider(token, base_url=settings.gitlab_url, client=client)
    if tag == AzureDevOpsProvider.source:
        return AzureDevOpsProvider(
            token, organization_url=settings.azure_devops_org_url, client=client
        )
    return None


__all__ = [
    "AzureDevOpsProvider",
    "CiProvider",
    "GitHubProvider",
    "GitLabProvider",
    "get_ci_provider",
    "render_summary_comment",
]
