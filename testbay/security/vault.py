"""AES-256-GCM encryption for tenant secrets stored at rest."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

_KEY_BYTES = 32
_IV_BYTES = 16
_TAG_BYTES = 16
_PAYLOAD_FIELDS = ("encrypted", "iv", "authTag")


class VaultConfigurationError(ValueError):
    """Raised when the vault key is missing or malformed."""


class SecretDecryptionError(RuntimeError):
    """Raised when a stored payload cannot be authenticated or decoded."""

    def __init__(self, message: str, *, reason_code: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code


@dataclass(frozen=True, slots=True)
class EncryptedSecret:
    """Hex-encoded ciphertext, IV and authentication tag."""

    encrypted: str
    iv: str
    auth_tag: str

    def to_payload(self) -> dict[str, str]:
        return {"encrypted": self.encrypted, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EncryptedSecret":
        missing = [name for name in _PAYLOAD_FIELDS if not isinstance(payload.get(name), str)]
        if missing:
            raise SecretDecryptionError(
                f"Encrypted payload is missing fields: {', '.join(missing)}",
                reason_code="invalid_payload",
            )
        return cls(
            encrypted=payload["encrypted"],
            iv=payload["iv"],
            auth_tag=payload["authTag"],
        )


def is_encrypted_payload(value: object) -> bool:
    """Return ``True`` when ``value`` has the shape of a vault payload."""

    return isinstance(value, Mapping) and all(
        isinstance(value.get(name), str) for name in _PAYLOAD_FIELDS
    )


class SecretVault:
    """Authenticated symmetric encryption keyed by a single 256-bit key.

    The vault keeps nothing but the key, so one instance can be shared by any
    number of concurrent pipelines.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != _KEY_BYTES:
            raise VaultConfigurationError(
                f"Vault key must be {_KEY_BYTES} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: Optional[str]) -> "SecretVault":
        """Build a vault from the 64 hex character ``ENCRYPTION_KEY`` form."""

        text = (key_hex or "").strip()
        if len(text) != _KEY_BYTES * 2:
            raise VaultConfigurationError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes)"
            )
        try:
            key = bytes.fromhex(text)
        except ValueError as exc:
            raise VaultConfigurationError("ENCRYPTION_KEY must be hex encoded") from exc
        return cls(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedSecret(
            encrypted=sealed[:-_TAG_BYTES].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-_TAG_BYTES:].hex(),
        )

    def decrypt(self, secret: EncryptedSecret | Mapping[str, Any]) -> str:
        if not isinstance(secret, EncryptedSecret):
            secret = EncryptedSecret.from_payload(secret)
        try:
            iv = bytes.fromhex(secret.iv)
            ciphertext = bytes.fromhex(secret.encrypted)
            tag = bytes.fromhex(secret.auth_tag)
        except ValueError as exc:
            raise SecretDecryptionError(
                "Encrypted payload is not valid hex", reason_code="invalid_payload"
            ) from exc
        if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
            raise SecretDecryptionError(
                "Encrypted payload has an invalid IV or tag length",
                reason_code="invalid_payload",
            )
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise SecretDecryptionError(
                "Authentication tag mismatch", reason_code="tag_mismatch"
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecretDecryptionError(
                "Decrypted secret is not UTF-8", reason_code="invalid_plaintext"
            ) from exc


def resolve_stored_secret(stored: object, vault: Optional[SecretVault]) -> Optional[str]:
    """Return the usable secret behind a stored value, or ``None``.

    Accepts an encrypted payload (mapping or its JSON text) or a legacy
    plaintext string. Anything that fails to decrypt counts as absent.
    """

    if stored is None:
        return None

    candidate: object = stored
    if isinstance(stored, str):
        text = stored.strip()
        if not text:
            return None
        if not text.startswith("{"):
            return text
        try:
            candidate = json.loads(text)
        except ValueError:
            return text

    if not is_encrypted_payload(candidate):
        if isinstance(stored, str):
            return stored.strip()
        logger.warning("Stored secret has an unrecognized shape; treating as absent")
        return None

    if vault is None:
        logger.warning("Encrypted secret found but no vault key is configured")
        return None

    try:
        value = vault.decrypt(candidate)  # type: ignore[arg-type]
    except SecretDecryptionError as exc:
        logger.warning(
            "Stored secret could not be decrypted; treating as absent",
            extra={"reason_code": exc.reason_code},
        )
        return None
    return value or None


__all__ = [
    "EncryptedSecret",
    "SecretDecryptionError",
    "SecretVault",
    "VaultConfigurationError",
    "is_encrypted_payload",
    "resolve_stored_secret",
]
