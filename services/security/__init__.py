"""Two-factor authentication: TOTP, backup codes, secret sealing and audit."""

from .errors import AccountNotFoundError, InvalidVerificationCode, TwoFactorError, TwoFactorStateError
from .records import (
    Account,
    AdminAction,
    AttemptMethod,
    RequestMetadata,
    TwoFactorAttempt,
    TwoFactorCredential,
    TwoFactorSetup,
    TwoFactorStatus,
    VerificationResult,
)
from .stores import InMemoryAccountDirectory, InMemoryAuditLog, InMemoryCredentialStore
from .vault import SecretVault, VaultError
from .twofactor import TwoFactorAuthenticator

__all__ = [
    "Account",
    "AccountNotFoundError",
    "AdminAction",
    "AttemptMethod",
    "InMemoryAccountDirectory",
    "InMemoryAuditLog",
    "InMemoryCredentialStore",
    "InvalidVerificationCode",
    "RequestMetadata",
    "SecretVault",
    "TwoFactorAttempt",
    "TwoFactorAuthenticator",
    "TwoFactorCredential",
    "TwoFactorError",
    "TwoFactorSetup",
    "TwoFactorStateError",
    "TwoFactorStatus",
    "VaultError",
    "VerificationResult",
]
