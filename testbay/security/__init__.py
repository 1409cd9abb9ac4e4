"""Tenant secret encryption and report access tokens."""

from testbay.security.report_tokens import ReportTokenClaims, ReportTokenService
from testbay.security.vault import (
    EncryptedSecret,
    SecretDecryptionError,
    SecretVault,
    VaultConfigurationError,
    resolve_stored_secret,
)

__all__ = [
    "EncryptedSecret",
    "ReportTokenClaims",
    "ReportTokenService",
    "SecretDecryptionError",
    "SecretVault",
    "VaultConfigurationError",
    "resolve_stored_secret",
]
