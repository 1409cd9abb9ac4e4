"""Unit tests for Slack, producer and CI provider HTTP channels."""

from __future__ import annotations

import base64
import json

import httpx

from testbay.config.settings import CiSettings
from testbay.distribution.ci import get_ci_provider
from testbay.distribution.ci.azure import AzureDevOpsProvider
from testbay.distribution.ci.github import GitHubProvider
from testbay.distribution.ci.gitlab import GitLabProvider
from testbay.distribution.notifier import ExecutionSummary, SlackNotifier, build_slack_blocks
from testbay.distribution.producer import ProducerClient
from testbay.execution.status import TestCounts
from testbay.execution.task_contract import CiContext


def _recording_client(requests: list, status_code: int = 200, **client_kwargs) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={})

    return httpx.Client(transport=httpx.MockTransport(handler), **client_kwargs)


SUMMARY = ExecutionSummary(
    task_id="task-1",
    organization_id="org-1",
    status="FAILED",
    folder="e2e",
    environment="staging",
    trigger="github",
    analysis="R" * 200,
)
CONTEXT = CiContext(source="github", repository="acme/shop", pr_number=7)
COUNTS = TestCounts(passed=8, failed=2)


def test_slack_blocks_include_status_link_and_snippet() -> None:
    blocks = build_slack_blocks(SUMMARY, dashboard_base_url="https://dash.example/")

    assert blocks[0]["text"]["text"] == "🔴 Execution FAILED - e2e"
    assert blocks[1]["fields"][1]["text"] == "*Triggered by:*\nGITHUB"
    assert blocks[2]["text"]["text"] == "*AI Analysis:*\n" + "R" * 150 + "..."
    assert blocks[-1]["elements"][0]["url"] == "https://dash.example/?drawerId=task-1"


def test_slack_blocks_skip_analysis_for_other_statuses() -> None:
    summary = ExecutionSummary(
        task_id="t", organization_id="o", status="UNSTABLE", folder="", environment="dev"
    )
    blocks = build_slack_blocks(summary, dashboard_base_url="https://dash.example")

    assert blocks[0]["text"]["text"] == "⚠️ Execution UNSTABLE - all"
    assert [block["type"] for block in blocks] == ["header", "section", "actions"]


def test_slack_notifier_posts_blocks_and_tolerates_errors() -> None:
    requests: list = []
    notifier = SlackNotifier(
        dashboard_base_url="https://dash.example", client=_recording_client(requests, 500)
    )

    notifier.send("https://hooks.example/abc", SUMMARY)

    assert str(requests[0].url) == "https://hooks.example/abc"
    assert "blocks" in json.loads(requests[0].content)


def test_producer_posts_status_and_log_updates() -> None:
    requests: list = []
    producer = ProducerClient(
        "http://producer:3000",
        client=_recording_client(requests, base_url="http://producer:3000"),
    )

    producer.update_status(task_id="t", organization_id="o", status="RUNNING", error=None)
    producer.send_log(task_id="t", organization_id="o", log="line\n")
    producer.send_log(task_id="t", organization_id="o", log="")

    assert [request.url.path for request in requests] == ["/executions/update", "/executions/log"]
    assert json.loads(requests[0].content) == {
        "taskId": "t",
        "organizationId": "o",
        "status": "RUNNING",
    }


def test_producer_without_url_is_inert() -> None:
    requests: list = []
    producer = ProducerClient(None, client=_recording_client(requests))

    producer.update_status(task_id="t", organization_id="o", status="RUNNING")

    assert not producer.enabled
    assert requests == []


def test_github_comment_request() -> None:
    requests: list = []
    provider = GitHubProvider("ghp_token", client=_recording_client(requests))

    provider.post_summary_comment(CONTEXT, "Root cause", "https://r.example/x?token=t", COUNTS)

    request = requests[0]
    assert str(request.url) == "https://api.github.com/repos/acme/shop/issues/7/comments"
    assert request.headers["Authorization"] == "Bearer ghp_token"
    body = json.loads(request.content)["body"]
    assert "**Test Cycle Results**: 8/10 Passed" in body
    assert "### AI Summary\nRoot cause" in body
    assert "[View Full Report](https://r.example/x?token=t)" in body


def test_gitlab_note_request_encodes_project_path() -> None:
    requests: list = []
    provider = GitLabProvider("glpat", client=_recording_client(requests))
    context = CiContext(source="gitlab", repository="group/sub/project", pr_number=3)

    provider.post_summary_comment(context, "summary", None, COUNTS)

    assert requests[0].url.raw_path.decode() == (
        "/api/v4/projects/group%2Fsub%2Fproject/merge_requests/3/notes"
    )
    assert requests[0].headers["PRIVATE-TOKEN"] == "glpat"


def test_azure_thread_request_uses_basic_auth() -> None:
    requests: list = []
    provider = AzureDevOpsProvider(
        "pat", organization_url="https://dev.azure.com/acme", client=_recording_client(requests)
    )
    context = CiContext(source="azure", repository="Shop/web", pr_number=11)

    provider.post_summary_comment(context, "summary", None, COUNTS)

    request = requests[0]
    assert request.url.path == "/acme/Shop/_apis/git/repositories/web/pullRequests/11/threads"
    assert request.url.params["api-version"] == "7.0"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b":pat").decode()


def test_provider_errors_are_swallowed() -> None:
    requests: list = []
    provider = GitHubProvider("t", client=_recording_client(requests, 403))

    provider.post_summary_comment(CONTEXT, "summary", None, COUNTS)
    AzureDevOpsProvider("pat", organization_url=None, client=_recording_client(requests)).post_summary_comment(
        CiContext(source="azure", repository="a/b", pr_number=1), "s", None, COUNTS
    )

    assert len(requests) == 1


def test_comment_is_skipped_without_pull_request() -> None:
    requests: list = []
    provider = GitHubProvider("t", client=_recording_client(requests))

    provider.post_summary_comment(CiContext(source="github", repository="a/b"), "s", None, COUNTS)

    assert requests == []


def test_provider_factory_selects_by_source() -> None:
    settings = CiSettings(github_api_url="https://ghe.example/api/v3")

    assert isinstance(get_ci_provider("GitHub", "t", settings=settings), GitHubProvider)
    assert isinstance(get_ci_provider("gitlab", "t", settings=settings), GitLabProvider)
    assert isinstance(get_ci_provider("azure", "t", settings=settings), AzureDevOpsProvider)
    assert get_ci_provider("jenkins", "t", settings=settings) is None
    assert get_ci_provider(None, "t", settings=settings) is None


def test_provider_factory_posts_through_injected_client() -> None:
    requests: list = []
    client = _recording_client(requests)
    settings = CiSettings()

    for source in ("github", "gitlab"):
        provider = get_ci_provider(source, "t", settings=settings, client=client)
        provider.post_summary_comment(
            CiContext(source=source, repository="a/b", pr_number=3), "s", None, COUNTS
        )

    assert len(requests) == 2
    assert not client.is_closed
