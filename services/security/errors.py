"""Exceptions raised by the two-factor authenticator.

Wrong codes on enable/verify/disable are ordinary outcomes and come back as
``False`` or a failed :class:`VerificationResult`; only precondition failures
and backup-code regeneration with a bad code raise.
"""
from __future__ import annotations


class TwoFactorError(Exception):
    """Base class for two-factor errors."""


class AccountNotFoundError(TwoFactorError):
    def __init__(self, account_id: str):
        super().__init__("User not found")
        self.account_id = account_id


class TwoFactorStateError(TwoFactorError):
    """The credential is not in the state the operation requires."""


class InvalidVerificationCode(TwoFactorError, PermissionError):
    def __init__(self, message: str = "Invalid verification code"):
        super().__init__(message)


NOT_ENABLED = "2FA not enabled"
SETUP_NOT_FOUND = "2FA setup not found"
ALREADY_ENABLED = "2FA already enabled"
