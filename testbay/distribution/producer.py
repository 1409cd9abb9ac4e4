"""Status and live-log updates sent back to the platform API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ProducerClient:
    """Best-effort client for ``/executions/update`` and ``/executions/log``.

    A client built without a base URL is inert, so callers never need to
    branch on whether the platform API is configured.
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._enabled = bool(base_url)
        self._client = client or httpx.Client(
            base_url=(base_url or "").rstrip("/"), timeout=timeout_seconds
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _post(self, path: str, payload: dict[str, Any]) -> None:
        if not self._enabled:
            return
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Producer update failed: %s",
                exc,
                extra={"path": path, "task_id": payload.get("taskId")},
            )

    def update_status(
        self,
        *,
        task_id: str,
        organization_id: str,
        status: str,
        **fields: Any,
    ) -> None:
        payload = {"taskId": task_id, "organizationId": organization_id, "status": status}
        payload.update({key: value for key, value in fields.items() if value is not None})
        self._post("/executions/update", payload)

    def send_log(self, *, task_id: str, organization_id: str, log: str) -> None:
        if not log:
            return
        self._post(
            "/executions/log",
            {"taskId": task_id, "organizationId": organization_id, "log": log},
        )

    def close(self) -> None:
        self._client.close()


__all__ = ["ProducerClient"]
