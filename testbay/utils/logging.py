"""Logging helpers for masking secrets before they reach logs or collaborators."""

from __future__ import annotations

import re
from base64 import b64encode
from typing import Iterable, Mapping
from urllib.parse import quote_plus

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|token|key|credential|auth|cookie|session)", re.IGNORECASE
)
_NON_SECRET_ENV_KEYS: frozenset[str] = frozenset(
    {"PATH", "HOME", "LANG", "TERM", "HOSTNAME", "CI", "BASE_URL", "TASK_ID"}
)
REDACTED = "***REDACTED***"


def _secret_variants(secret: str) -> set[str]:
    return {secret, b64encode(secret.encode()).decode(), quote_plus(secret)}


def is_sensitive_key(key: str) -> bool:
    """Return ``True`` when ``key`` looks like it names a credential."""

    if key.upper() in _NON_SECRET_ENV_KEYS:
        return False
    return bool(_SENSITIVE_KEY_PATTERN.search(key))


def redact_environment(environment: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of ``environment`` with sensitive values masked."""

    return {
        key: (REDACTED if is_sensitive_key(key) else value)
        for key, value in environment.items()
    }


class SecretRedactor:
    """Scrub known secret values from free text.

    Plain string replacement against each secret and its base64 / URL-quoted
    forms, longest first so overlapping secrets do not leave partial matches.
    """

    def __init__(self, secrets: Iterable[str | None] | None = None, placeholder: str = "***") -> None:
        self._placeholder = placeholder
        seen: set[str] = set()
        for value in secrets or []:
            if not value or len(value) < 4:
                continue
            seen.update(variant for variant in _secret_variants(value) if variant)
        self._secrets: list[str] = sorted(seen, key=len, reverse=True)

    def scrub(self, text: str | None) -> str:
        if not text:
            return ""
        scrubbed = text
        for secret in self._secrets:
            scrubbed = scrubbed.replace(secret, self._placeholder)
        return scrubbed


__all__ = ["REDACTED", "SecretRedactor", "is_sensitive_key", "redact_environment"]
