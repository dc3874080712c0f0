"""Value objects for two-factor credentials and their audit trail."""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

DEFAULT_DEVICE_NAME = "Unknown Device"


class AttemptMethod(str, enum.Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    RECOVERY = "recovery"


@dataclass(slots=True)
class TwoFactorCredential:
    """Per-account secret material, embedded in the account record."""

    secret: str = ""
    backup_codes: List[str] = field(default_factory=list)
    enabled: bool = False
    device_name: Optional[str] = None
    setup_at: Optional[datetime] = None
    enabled_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    disabled_at: Optional[datetime] = None
    backup_codes_generated_at: Optional[datetime] = None
    emergency_disabled_at: Optional[datetime] = None
    emergency_disabled_by: Optional[str] = None

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)

    def copy(self, **changes) -> "TwoFactorCredential":
        changes.setdefault("backup_codes", list(self.backup_codes))
        return replace(self, **changes)


@dataclass(slots=True, frozen=True)
class RequestMetadata:
    ip_address: str = "unknown"
    user_agent: str = "unknown"


@dataclass(slots=True, frozen=True)
class TwoFactorAttempt:
    """One verification outcome. Written once, never updated."""

    account_id: str
    account_email: str
    success: bool
    method: AttemptMethod
    ip_address: str
    user_agent: str
    timestamp: datetime
    failure_reason: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(slots=True, frozen=True)
class AdminAction:
    action: str
    target_account_id: str
    admin_account_id: str
    timestamp: datetime
    reason: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(slots=True, frozen=True)
class Account:
    account_id: str
    email: str = ""
    role: str = "user"


@dataclass(slots=True, frozen=True)
class TwoFactorSetup:
    secret: str
    manual_entry_key: str
    provisioning_uri: str
    backup_codes: List[str]

    def qr_code_data_url(self) -> str:
        from services.security.otp import qr_png_data_url

        return qr_png_data_url(self.provisioning_uri)


@dataclass(slots=True, frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int = 0
    setup_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    device_name: Optional[str] = None


@dataclass(slots=True, frozen=True)
class VerificationResult:
    success: bool
    method: Optional[AttemptMethod] = None
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success
