"""Two-factor authentication built on TOTP with single-use backup codes.

Enrollment moves a credential through ``not set up -> set up -> enabled ->
disabled``; a disabled credential keeps no secret material, so enrolling again
always starts with a fresh ``setup_two_factor`` and a new QR scan.

Every code check writes exactly one attempt record to the audit log. Audit
writes happen after the decision and cannot change it.
"""
from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, FrozenSet, List, Optional

from monitoring.observability import TwoFactorMetrics
from services.audit import record_admin_action, record_attempt
from services.security import otp
from services.security.errors import (
    ALREADY_ENABLED,
    NOT_ENABLED,
    SETUP_NOT_FOUND,
    AccountNotFoundError,
    InvalidVerificationCode,
    TwoFactorStateError,
)
from services.security.records import (
    DEFAULT_DEVICE_NAME,
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
from services.security.stores import AccountDirectory, AuditLog, CredentialStore
from services.security.vault import SecretVault, VaultError
from utils.config import DEFAULT_ELEVATED_ROLES, DEFAULT_ISSUER
from utils.structured_logging import get_logger

if TYPE_CHECKING:
    from utils.config import TwoFactorSettings

LOG = get_logger("fahampesa.twofactor")

EMERGENCY_DISABLE_ACTION = "emergency_disable_2fa"
INVALID_CODE_MESSAGE = "Invalid verification code"
_UNKNOWN = RequestMetadata()


@dataclass(slots=True)
class TwoFactorAuthenticator:
    credentials: CredentialStore
    audit: AuditLog
    accounts: Optional[AccountDirectory] = None
    vault: Optional[SecretVault] = None
    issuer: str = DEFAULT_ISSUER
    drift_window: int = 1
    elevated_roles: FrozenSet[str] = DEFAULT_ELEVATED_ROLES
    history_limit: int = 50
    metrics: Optional[TwoFactorMetrics] = None
    clock: Callable[[], float] = time.time

    @classmethod
    def from_settings(
        cls,
        settings: "TwoFactorSettings",
        *,
        credentials: CredentialStore,
        audit: AuditLog,
        accounts: Optional[AccountDirectory] = None,
        metrics: Optional[TwoFactorMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> "TwoFactorAuthenticator":
        vault = SecretVault.from_b64(settings.master_key_b64) if settings.master_key_b64 else None
        return cls(
            credentials=credentials,
            audit=audit,
            accounts=accounts,
            vault=vault,
            issuer=settings.issuer,
            drift_window=settings.drift_window,
            elevated_roles=frozenset(settings.elevated_roles),
            history_limit=settings.attempt_history_limit,
            metrics=metrics,
            clock=clock,
        )

    # ------------------------------------------------------------------ helpers

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    def _seal(self, account_id: str, secret: str) -> str:
        if self.vault is None:
            return secret
        return self.vault.seal(secret, context=account_id)

    def _open(self, account_id: str, stored: str) -> str:
        if not SecretVault.is_sealed(stored):
            return stored
        if self.vault is None:
            raise VaultError("Secret is sealed but no vault is configured")
        return self.vault.unseal(stored, context=account_id)

    def _check_totp(self, account_id: str, credential: TwoFactorCredential, code: str) -> bool:
        secret = self._open(account_id, credential.secret)
        return otp.verify_totp(secret, code, self.drift_window, for_time=self.clock())

    @staticmethod
    def _match_backup_code(codes: List[str], code: str) -> Optional[str]:
        candidate = otp.normalize_code(code)
        match = None
        for stored in codes:
            if hmac.compare_digest(stored.encode(), candidate.encode()):
                match = stored
        return match

    async def _lookup_account(self, account_id: str) -> Optional[Account]:
        if self.accounts is None:
            return Account(account_id=account_id)
        return await self.accounts.get_account(account_id)

    async def _require_account(self, account_id: str) -> Account:
        account = await self._lookup_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def _require_enabled(self, account_id: str) -> TwoFactorCredential:
        credential = await self.credentials.get(account_id)
        if credential is None or not credential.enabled:
            raise TwoFactorStateError(NOT_ENABLED)
        return credential

    async def _log_attempt(
        self,
        account: Account,
        *,
        success: bool,
        method: AttemptMethod,
        metadata: Optional[RequestMetadata],
        reason: Optional[str],
    ) -> None:
        meta = metadata or _UNKNOWN
        attempt = TwoFactorAttempt(
            account_id=account.account_id,
            account_email=account.email,
            success=success,
            method=method,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            timestamp=self._now(),
            failure_reason=reason,
        )
        await record_attempt(self.audit, attempt, metrics=self.metrics)

    def _transition(self, name: str, account_id: str) -> None:
        LOG.info("2FA %s", name, extra={"account_id": account_id})
        if self.metrics is not None:
            self.metrics.record_transition(name)

    # --------------------------------------------------------------- enrollment

    async def setup_two_factor(
        self,
        account_id: str,
        email: str,
        device_name: Optional[str] = None,
    ) -> TwoFactorSetup:
        """Start (or restart) enrollment with a fresh secret and backup codes.

        An unconfirmed setup is overwritten. An enabled credential must be
        disabled first.
        """
        current = await self.credentials.get(account_id)
        if current is not None and current.enabled:
            raise TwoFactorStateError(ALREADY_ENABLED)

        secret = otp.generate_secret()
        codes = otp.generate_backup_codes()
        now = self._now()
        await self.credentials.set(
            account_id,
            TwoFactorCredential(
                secret=self._seal(account_id, secret),
                backup_codes=list(codes),
                enabled=False,
                device_name=device_name or DEFAULT_DEVICE_NAME,
                setup_at=now,
                backup_codes_generated_at=now,
            ),
        )
        self._transition("setup", account_id)
        return TwoFactorSetup(
            secret=secret,
            manual_entry_key=otp.manual_entry_key(secret),
            provisioning_uri=otp.provisioning_uri(secret, email, self.issuer),
            backup_codes=list(codes),
        )

    async def enable_two_factor(
        self,
        account_id: str,
        code: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> bool:
        """Confirm a pending setup with a TOTP code. Backup codes are not accepted."""
        account = await self._require_account(account_id)
        credential = await self.credentials.get(account_id)
        if credential is None or not credential.has_secret:
            raise TwoFactorStateError(SETUP_NOT_FOUND)
        if credential.enabled:
            raise TwoFactorStateError(ALREADY_ENABLED)

        if not self._check_totp(account_id, credential, code):
            await self._log_attempt(
                account, success=False, method=AttemptMethod.TOTP, metadata=metadata, reason=INVALID_CODE_MESSAGE
            )
            return False

        now = self._now()
        await self.credentials.update(account_id, enabled=True, enabled_at=now, last_used=now)
        await self._log_attempt(
            account, success=True, method=AttemptMethod.TOTP, metadata=metadata, reason="Setup completed"
        )
        self._transition("enable", account_id)
        return True

    async def verify_two_factor(
        self,
        account_id: str,
        code: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> VerificationResult:
        """Second login factor: TOTP first, then a single-use backup code."""
        account = await self._lookup_account(account_id)
        if account is None:
            return VerificationResult(success=False, error="User not found")
        credential = await self.credentials.get(account_id)
        if credential is None or not credential.enabled:
            return VerificationResult(success=False, error=NOT_ENABLED)

        if self._check_totp(account_id, credential, code):
            await self.credentials.update(account_id, last_used=self._now())
            await self._log_attempt(
                account, success=True, method=AttemptMethod.TOTP, metadata=metadata, reason="Login successful"
            )
            return VerificationResult(success=True, method=AttemptMethod.TOTP)

        match = self._match_backup_code(credential.backup_codes, code)
        if match is not None and await self.credentials.remove_backup_code(
            account_id, match, used_at=self._now()
        ):
            await self._log_attempt(
                account, success=True, method=AttemptMethod.BACKUP_CODE, metadata=metadata, reason="Backup code used"
            )
            return VerificationResult(success=True, method=AttemptMethod.BACKUP_CODE)

        await self._log_attempt(
            account, success=False, method=AttemptMethod.TOTP, metadata=metadata, reason="Invalid code"
        )
        return VerificationResult(success=False, error=INVALID_CODE_MESSAGE)

    async def disable_two_factor(
        self,
        account_id: str,
        code: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> bool:
        """Turn 2FA off after proof of possession (TOTP or a current backup code).

        The secret and backup codes are discarded; the presented backup code is
        not consumed separately.
        """
        account = await self._require_account(account_id)
        credential = await self._require_enabled(account_id)

        if self._check_totp(account_id, credential, code):
            method = AttemptMethod.TOTP
        elif self._match_backup_code(credential.backup_codes, code) is not None:
            method = AttemptMethod.BACKUP_CODE
        else:
            await self._log_attempt(
                account, success=False, method=AttemptMethod.TOTP, metadata=metadata, reason="Invalid code for disable"
            )
            return False

        await self.credentials.set(account_id, TwoFactorCredential(enabled=False, disabled_at=self._now()))
        await self._log_attempt(account, success=True, method=method, metadata=metadata, reason="Disabled 2FA")
        self._transition("disable", account_id)
        return True

    async def generate_new_backup_codes(
        self,
        account_id: str,
        code: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> List[str]:
        """Replace all backup codes with ten fresh ones.

        Only a TOTP code is accepted here, so the last backup code cannot mint
        new ones. Raises :class:`InvalidVerificationCode` on a bad code.
        """
        account = await self._require_account(account_id)
        credential = await self._require_enabled(account_id)

        if not self._check_totp(account_id, credential, code):
            await self._log_attempt(
                account,
                success=False,
                method=AttemptMethod.TOTP,
                metadata=metadata,
                reason="Invalid code for backup code regeneration",
            )
            raise InvalidVerificationCode()

        codes = otp.generate_backup_codes()
        await self.credentials.update(account_id, backup_codes=list(codes), backup_codes_generated_at=self._now())
        await self._log_attempt(
            account, success=True, method=AttemptMethod.TOTP, metadata=metadata, reason="Backup codes regenerated"
        )
        self._transition("regenerate_backup_codes", account_id)
        return codes

    async def emergency_disable_two_factor(
        self,
        account_id: str,
        acting_admin_id: str,
        *,
        reason: str = "Emergency 2FA disable",
    ) -> bool:
        """Break-glass disable without a code.

        The admin action record is written before anything else is read or
        changed; if that write fails the error propagates and the credential is
        left as is. An account that never set up 2FA still ends with a disabled,
        stamped credential.
        """
        await self._require_account(account_id)
        now = self._now()
        await record_admin_action(
            self.audit,
            AdminAction(
                action=EMERGENCY_DISABLE_ACTION,
                target_account_id=account_id,
                admin_account_id=acting_admin_id,
                timestamp=now,
                reason=reason,
            ),
        )
        await self.credentials.set(
            account_id,
            TwoFactorCredential(
                enabled=False,
                disabled_at=now,
                emergency_disabled_at=now,
                emergency_disabled_by=acting_admin_id,
            ),
        )
        self._transition("emergency_disable", account_id)
        return True

    # -------------------------------------------------------------------- reads

    async def get_two_factor_status(self, account_id: str) -> TwoFactorStatus:
        credential = await self.credentials.get(account_id)
        if credential is None:
            return TwoFactorStatus(enabled=False)
        return TwoFactorStatus(
            enabled=credential.enabled,
            backup_codes_remaining=len(credential.backup_codes),
            setup_at=credential.setup_at,
            last_used=credential.last_used,
            device_name=credential.device_name,
        )

    async def requires_two_factor(self, account_id: str) -> bool:
        """Only elevated administrative roles must enroll."""
        if self.accounts is None:
            return False
        account = await self.accounts.get_account(account_id)
        if account is None:
            return False
        return (account.role or "user").strip().lower() in self.elevated_roles

    async def get_two_factor_attempts(self, account_id: str, limit: Optional[int] = None) -> List[TwoFactorAttempt]:
        return await self.audit.query(account_id, self.history_limit if limit is None else limit)


__all__ = ["EMERGENCY_DISABLE_ACTION", "TwoFactorAuthenticator"]
