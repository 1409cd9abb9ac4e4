"""Environment and host rewriting for untrusted task containers."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_RESERVED_PREFIX = "PLATFORM_"
DEFAULT_HOST_ALIAS = "host.docker.internal"
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})


def resolve_host_for_container(
    url: str,
    running_in_container: bool,
    *,
    host_alias: str = DEFAULT_HOST_ALIAS,
) -> str:
    """Point loopback URLs at the container-to-host alias.

    Returns ``url`` unchanged when the flag is false, when the host is not a
    loopback name, or when the URL cannot be parsed.
    """

    if not running_in_container or not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return url
    if not hostname or hostname.lower() not in _LOOPBACK_HOSTS:
        return url

    netloc = host_alias if port is None else f"{host_alias}:{port}"
    userinfo, sep, _ = parts.netloc.rpartition("@")
    if sep:
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def is_reserved_name(name: str, reserved_prefix: str = DEFAULT_RESERVED_PREFIX) -> bool:
    """Return ``True`` when ``name`` falls in the platform's reserved namespace."""

    return bool(reserved_prefix) and name.upper().startswith(reserved_prefix.upper())


def _is_valid_name(name: object) -> bool:
    return isinstance(name, str) and bool(name) and "=" not in name and "\x00" not in name


def build_container_environment(
    *,
    task_env: Optional[Mapping[str, str]] = None,
    computed: Optional[Mapping[str, str]] = None,
    forward_keys: Iterable[str] = (),
    host_env: Optional[Mapping[str, str]] = None,
    reserved_prefix: str = DEFAULT_RESERVED_PREFIX,
) -> dict[str, str]:
    """Compute the exact environment exposed inside a task container.

    Sources are layered host allow-list, then task ``envVars``, then computed
    values, so the computed values always win. Names in the reserved
    namespace are dropped from the allow-list and from ``envVars``.
    """

    environment: dict[str, str] = {}
    dropped: list[str] = []
    host = host_env or {}

    for key in forward_keys:
        name = str(key).strip()
        if not _is_valid_name(name):
            continue
        if is_reserved_name(name, reserved_prefix):
            dropped.append(name)
            continue
        value = host.get(name)
        if value is not None:
            environment[name] = str(value)

    for name, value in (task_env or {}).items():
        if not _is_valid_name(name) or value is None:
            continue
        if is_reserved_name(name, reserved_prefix):
            dropped.append(name)
            continue
        environment[name] = str(value)

    for name, value in (computed or {}).items():
        if value is None:
            continue
        environment[name] = str(value)

    if dropped:
        logger.info(
            "Dropped reserved environment names from task container",
            extra={"dropped_keys": sorted(set(dropped))},
        )
    return environment


def computed_environment(
    *,
    task_id: str,
    base_url: Optional[str],
    running_in_container: bool,
    host_alias: str = DEFAULT_HOST_ALIAS,
) -> dict[str, str]:
    """Values the worker always injects into task containers."""

    values = {"CI": "true", "TASK_ID": task_id}
    if base_url:
        values["BASE_URL"] = resolve_host_for_container(
            base_url, running_in_container, host_alias=host_alias
        )
    return values


__all__ = [
    "DEFAULT_HOST_ALIAS",
    "DEFAULT_RESERVED_PREFIX",
    "build_container_environment",
    "computed_environment",
    "is_reserved_name",
    "resolve_host_for_container",
]
