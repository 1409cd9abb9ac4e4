"""Short-lived signed tokens granting access to one task's reports."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Callable, Optional

DEFAULT_TTL_SECONDS = 300


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


@dataclass(frozen=True, slots=True)
class ReportTokenClaims:
    organization_id: str
    task_id: str
    expires_at: int


class ReportTokenService:
    """Issue and verify ``base64url(payload).base64url(signature)`` tokens.

    The payload is ``{"orgId", "taskId", "exp"}`` and the signature is
    HMAC-SHA256 over the encoded payload segment.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("Report token secret must not be empty")
        self._key = secret.encode("utf-8")
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, payload_segment: str) -> str:
        digest = hmac.new(self._key, payload_segment.encode("ascii"), hashlib.sha256)
        return _b64url_encode(digest.digest())

    def issue(self, *, organization_id: str, task_id: str) -> str:
        expires_at = int(self._clock()) + self._ttl_seconds
        payload = json.dumps(
            {"orgId": organization_id, "taskId": task_id, "exp": expires_at},
            separators=(",", ":"),
        )
        segment = _b64url_encode(payload.encode("utf-8"))
        return f"{segment}.{self._sign(segment)}"

    def read_claims(self, token: Optional[str], *, task_id: str) -> Optional[ReportTokenClaims]:
        """Return the claims of a valid token for ``task_id`` or ``None``.

        The caller still has to compare ``organization_id`` with the owner of
        the requested resource.
        """

        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 2 or not all(parts):
            return None
        segment, signature = parts

        expected = self._sign(segment)
        if len(signature) != len(expected):
            return None
        if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
            return None

        try:
            payload = json.loads(_b64url_decode(segment))
        except (ValueError, binascii.Error):
            return None
        if not isinstance(payload, dict):
            return None

        org_id = payload.get("orgId")
        claimed_task = payload.get("taskId")
        expires_at = payload.get("exp")
        if not isinstance(org_id, str) or not isinstance(claimed_task, str):
            return None
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if expires_at <= self._clock():
            return None
        if claimed_task != task_id:
            return None
        return ReportTokenClaims(
            organization_id=org_id, task_id=claimed_task, expires_at=int(expires_at)
        )

    def verify(self, token: Optional[str], *, organization_id: str, task_id: str) -> bool:
        claims = self.read_claims(token, task_id=task_id)
        return claims is not None and claims.organization_id == organization_id


__all__ = ["DEFAULT_TTL_SECONDS", "ReportTokenClaims", "ReportTokenService"]
