from .models import AccountRow, AdminActionRow, BackupCodeRow, TwoFactorAttemptRow, TwoFactorCredentialRow  # noqa: F401

__all__ = [
    "AccountRow",
    "AdminActionRow",
    "BackupCodeRow",
    "TwoFactorAttemptRow",
    "TwoFactorCredentialRow",
]
