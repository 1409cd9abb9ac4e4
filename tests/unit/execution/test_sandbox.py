"""Unit tests for container environment construction and host rewriting."""

from __future__ import annotations

import logging

import pytest

from testbay.execution.sandbox import (
    build_container_environment,
    computed_environment,
    is_reserved_name,
    resolve_host_for_container,
)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("http://localhost:3000/login", "http://host.docker.internal:3000/login"),
        ("http://127.0.0.1/", "http://host.docker.internal/"),
        ("https://user:pw@localhost:8443/a?b=1#c", "https://user:pw@host.docker.internal:8443/a?b=1#c"),
        ("https://staging.example.com", "https://staging.example.com"),
    ],
)
def test_loopback_hosts_are_rewritten_inside_containers(url: str, expected: str) -> None:
    assert resolve_host_for_container(url, True) == expected


def test_rewrite_is_identity_when_not_in_container() -> None:
    assert resolve_host_for_container("http://localhost:3000", False) == "http://localhost:3000"


def test_rewrite_is_idempotent() -> None:
    once = resolve_host_for_container("http://localhost:3000", True)

    assert resolve_host_for_container(once, True) == once


def test_unparseable_url_is_returned_unchanged() -> None:
    assert resolve_host_for_container("http://localhost:99999999", True) == "http://localhost:99999999"


def test_reserved_names_are_case_insensitive() -> None:
    assert is_reserved_name("PLATFORM_JWT_SECRET")
    assert is_reserved_name("platform_gemini_api_key")
    assert not is_reserved_name("API_USER")


def test_reserved_names_never_reach_the_container(caplog) -> None:
    host_env = {"PLATFORM_JWT_SECRET": "s3cret", "SHARED_TOKEN": "abc"}

    with caplog.at_level(logging.INFO):
        env = build_container_environment(
            task_env={"PLATFORM_GEMINI_API_KEY": "override", "API_USER": "qa"},
            computed={"CI": "true"},
            forward_keys=("PLATFORM_JWT_SECRET", "SHARED_TOKEN"),
            host_env=host_env,
        )

    assert env == {"SHARED_TOKEN": "abc", "API_USER": "qa", "CI": "true"}
    assert not any(name.upper().startswith("PLATFORM_") for name in env)
    assert "s3cret" not in caplog.text


def test_layering_host_then_task_then_computed() -> None:
    env = build_container_environment(
        task_env={"SHARED": "task", "TASK_ID": "spoofed"},
        computed={"TASK_ID": "task-1"},
        forward_keys=("SHARED",),
        host_env={"SHARED": "host"},
    )

    assert env == {"SHARED": "task", "TASK_ID": "task-1"}


def test_forwarded_keys_missing_on_host_are_skipped() -> None:
    env = build_container_environment(forward_keys=("ABSENT",), host_env={})

    assert env == {}


def test_invalid_names_are_dropped() -> None:
    env = build_container_environment(task_env={"A=B": "x", "": "y", "OK": "z"})

    assert env == {"OK": "z"}


def test_computed_environment_rewrites_base_url() -> None:
    values = computed_environment(
        task_id="task-1", base_url="http://localhost:3000", running_in_container=True
    )

    assert values == {
        "CI": "true",
        "TASK_ID": "task-1",
        "BASE_URL": "http://host.docker.internal:3000",
    }
    assert "BASE_URL" not in computed_environment(
        task_id="task-1", base_url=None, running_in_container=True
    )
