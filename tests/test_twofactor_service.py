import asyncio
import base64
import logging
from datetime import datetime, timezone

import pytest

from services.security import (
    AccountNotFoundError,
    AttemptMethod,
    InMemoryAuditLog,
    InvalidVerificationCode,
    RequestMetadata,
    SecretVault,
    TwoFactorAuthenticator,
    TwoFactorStateError,
    VaultError,
)
from services.security.errors import ALREADY_ENABLED, NOT_ENABLED, SETUP_NOT_FOUND
from services.security.otp import generate_totp
from services.security.twofactor import EMERGENCY_DISABLE_ACTION
from utils.config import TwoFactorSettings

from conftest import T0

META = RequestMetadata(ip_address="10.0.0.7", user_agent="pytest-agent")


def _at(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)


def _wrong_code(secret: str, now: float, window: int = 1) -> str:
    valid = {generate_totp(secret, now + k * 30) for k in range(-window, window + 1)}
    for n in range(1_000_000):
        candidate = f"{n:06d}"
        if candidate not in valid:
            return candidate
    raise AssertionError("unreachable")


async def _enrolled(auth, clock, account_id="acct-1", email="a@b.com"):
    setup = await auth.setup_two_factor(account_id, email)
    assert await auth.enable_two_factor(account_id, generate_totp(setup.secret, clock()), META)
    return setup


class FailingAuditLog(InMemoryAuditLog):
    """Attempt writes blow up; admin actions optionally too."""

    def __init__(self, *, fail_admin: bool = False):
        super().__init__()
        self.fail_admin = fail_admin

    async def append(self, attempt):
        raise RuntimeError("audit backend down")

    async def append_admin_action(self, action):
        if self.fail_admin:
            raise RuntimeError("audit backend down")
        await super().append_admin_action(action)


# ---------------------------------------------------------------- setup/enable


@pytest.mark.asyncio
async def test_setup_returns_enrollment_material(auth, credentials, audit, clock):
    setup = await auth.setup_two_factor("acct-1", "a@b.com", device_name="Pixel 8")

    assert len(setup.secret) == 32
    assert setup.manual_entry_key.replace(" ", "") == setup.secret
    assert setup.provisioning_uri == (
        f"otpauth://totp/FahamPesa:a%40b.com?secret={setup.secret}&issuer=FahamPesa"
    )
    assert len(setup.backup_codes) == 10
    assert setup.qr_code_data_url().startswith("data:image/png;base64,")

    stored = await credentials.get("acct-1")
    assert stored.enabled is False
    assert stored.secret == setup.secret
    assert stored.backup_codes == setup.backup_codes
    assert stored.device_name == "Pixel 8"
    assert stored.setup_at == _at(T0)
    assert stored.backup_codes_generated_at == _at(T0)
    assert audit.attempts == []


@pytest.mark.asyncio
async def test_setup_again_before_enable_replaces_secret(auth, credentials):
    first = await auth.setup_two_factor("acct-1", "a@b.com")
    second = await auth.setup_two_factor("acct-1", "a@b.com")
    assert first.secret != second.secret
    assert (await credentials.get("acct-1")).secret == second.secret
    assert (await credentials.get("acct-1")).device_name == "Unknown Device"


@pytest.mark.asyncio
async def test_enable_with_current_code(auth, audit, clock):
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    assert await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock()), META) is True

    status = await auth.get_two_factor_status("acct-1")
    assert status.enabled is True
    assert status.backup_codes_remaining == 10
    assert status.last_used == _at(T0)

    [attempt] = audit.attempts
    assert attempt.success is True
    assert attempt.method is AttemptMethod.TOTP
    assert attempt.failure_reason == "Setup completed"
    assert attempt.account_email == "a@b.com"
    assert (attempt.ip_address, attempt.user_agent) == ("10.0.0.7", "pytest-agent")


@pytest.mark.asyncio
async def test_enable_with_wrong_code_stays_disabled(auth, audit, clock):
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    assert await auth.enable_two_factor("acct-1", _wrong_code(setup.secret, clock())) is False

    assert (await auth.get_two_factor_status("acct-1")).enabled is False
    [attempt] = audit.attempts
    assert attempt.success is False
    assert attempt.failure_reason == "Invalid verification code"
    assert (attempt.ip_address, attempt.user_agent) == ("unknown", "unknown")


@pytest.mark.asyncio
async def test_enable_rejects_backup_code(auth):
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    assert await auth.enable_two_factor("acct-1", setup.backup_codes[0]) is False
    assert (await auth.get_two_factor_status("acct-1")).enabled is False


@pytest.mark.asyncio
async def test_enable_preconditions(auth, clock):
    with pytest.raises(TwoFactorStateError, match=SETUP_NOT_FOUND):
        await auth.enable_two_factor("acct-1", "123456")
    with pytest.raises(AccountNotFoundError, match="User not found"):
        await auth.enable_two_factor("ghost", "123456")

    setup = await _enrolled(auth, clock)
    with pytest.raises(TwoFactorStateError, match=ALREADY_ENABLED):
        await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock()))
    with pytest.raises(TwoFactorStateError, match=ALREADY_ENABLED):
        await auth.setup_two_factor("acct-1", "a@b.com")


# ---------------------------------------------------------------------- verify


@pytest.mark.asyncio
async def test_verify_with_totp_updates_last_used(auth, audit, clock):
    setup = await _enrolled(auth, clock)
    clock.advance(120)

    result = await auth.verify_two_factor("acct-1", generate_totp(setup.secret, clock()), META)
    assert result
    assert result.method is AttemptMethod.TOTP
    assert result.error is None
    assert (await auth.get_two_factor_status("acct-1")).last_used == _at(T0 + 120)
    assert audit.attempts[-1].failure_reason == "Login successful"


@pytest.mark.asyncio
async def test_verify_accepts_adjacent_step_only(auth, clock):
    setup = await _enrolled(auth, clock)
    clock.advance(300)
    previous = generate_totp(setup.secret, clock() - 30)
    stale = generate_totp(setup.secret, clock() - 90)
    current = {generate_totp(setup.secret, clock() + k * 30) for k in (-1, 0, 1)}

    assert (await auth.verify_two_factor("acct-1", previous)).success
    if stale not in current:
        assert not (await auth.verify_two_factor("acct-1", stale)).success


@pytest.mark.asyncio
async def test_backup_code_is_single_use(auth, audit, clock):
    setup = await _enrolled(auth, clock)
    code = setup.backup_codes[3]
    clock.advance(60)

    first = await auth.verify_two_factor("acct-1", code, META)
    assert first.success and first.method is AttemptMethod.BACKUP_CODE
    assert audit.attempts[-1].failure_reason == "Backup code used"

    status = await auth.get_two_factor_status("acct-1")
    assert status.backup_codes_remaining == 9
    assert status.last_used == _at(T0 + 60)

    second = await auth.verify_two_factor("acct-1", code, META)
    assert not second.success
    assert second.error == "Invalid verification code"
    assert (await auth.get_two_factor_status("acct-1")).backup_codes_remaining == 9


@pytest.mark.asyncio
async def test_concurrent_backup_code_use_succeeds_once(auth, clock):
    setup = await _enrolled(auth, clock)
    code = setup.backup_codes[0]

    results = await asyncio.gather(*(auth.verify_two_factor("acct-1", code) for _ in range(5)))
    assert sum(r.success for r in results) == 1
    assert (await auth.get_two_factor_status("acct-1")).backup_codes_remaining == 9


@pytest.mark.asyncio
async def test_verify_wrong_code_logs_failure(auth, audit, clock):
    setup = await _enrolled(auth, clock)
    result = await auth.verify_two_factor("acct-1", _wrong_code(setup.secret, clock()), META)

    assert result.success is False
    assert result.method is None
    assert result.error == "Invalid verification code"
    attempt = audit.attempts[-1]
    assert attempt.success is False
    assert attempt.method is AttemptMethod.TOTP
    assert attempt.failure_reason == "Invalid code"
    assert (await auth.get_two_factor_status("acct-1")).backup_codes_remaining == 10


@pytest.mark.asyncio
async def test_verify_without_enrollment_is_not_audited(auth, audit, clock):
    missing = await auth.verify_two_factor("ghost", "123456")
    assert missing.error == "User not found"

    not_enabled = await auth.verify_two_factor("acct-1", "123456")
    assert not_enabled.error == NOT_ENABLED

    await auth.setup_two_factor("acct-1", "a@b.com")
    pending = await auth.verify_two_factor("acct-1", "123456")
    assert pending.error == NOT_ENABLED
    assert audit.attempts == []


# --------------------------------------------------------------------- disable


@pytest.mark.asyncio
async def test_disable_with_totp_discards_secret(auth, credentials, audit, clock):
    setup = await _enrolled(auth, clock)
    clock.advance(30)

    assert await auth.disable_two_factor("acct-1", generate_totp(setup.secret, clock()), META) is True

    stored = await credentials.get("acct-1")
    assert stored.enabled is False
    assert stored.secret == ""
    assert stored.backup_codes == []
    assert stored.disabled_at == _at(T0 + 30)

    status = await auth.get_two_factor_status("acct-1")
    assert (status.enabled, status.backup_codes_remaining) == (False, 0)

    last = audit.attempts[-1]
    assert (last.success, last.method, last.failure_reason) == (True, AttemptMethod.TOTP, "Disabled 2FA")

    after = await auth.verify_two_factor("acct-1", setup.backup_codes[0])
    assert after.error == NOT_ENABLED

    again = await auth.setup_two_factor("acct-1", "a@b.com")
    assert again.secret != setup.secret


@pytest.mark.asyncio
async def test_disable_with_backup_code(auth, audit, clock):
    setup = await _enrolled(auth, clock)
    assert await auth.disable_two_factor("acct-1", setup.backup_codes[-1]) is True
    assert audit.attempts[-1].method is AttemptMethod.BACKUP_CODE
    assert (await auth.get_two_factor_status("acct-1")).enabled is False


@pytest.mark.asyncio
async def test_disable_with_wrong_code_keeps_2fa(auth, audit, clock):
    setup = await _enrolled(auth, clock)
    assert await auth.disable_two_factor("acct-1", _wrong_code(setup.secret, clock())) is False

    assert (await auth.get_two_factor_status("acct-1")).enabled is True
    assert audit.attempts[-1].failure_reason == "Invalid code for disable"
    assert audit.attempts[-1].success is False


@pytest.mark.asyncio
async def test_disable_requires_enabled(auth):
    with pytest.raises(TwoFactorStateError, match=NOT_ENABLED):
        await auth.disable_two_factor("acct-1", "123456")
    await auth.setup_two_factor("acct-1", "a@b.com")
    with pytest.raises(TwoFactorStateError, match=NOT_ENABLED):
        await auth.disable_two_factor("acct-1", "123456")
    with pytest.raises(AccountNotFoundError):
        await auth.disable_two_factor("ghost", "123456")


# ------------------------------------------------------------ backup rotation


@pytest.mark.asyncio
async def test_regenerate_replaces_every_code(auth, credentials, audit, clock):
    setup = await _enrolled(auth, clock)
    clock.advance(3600)

    fresh = await auth.generate_new_backup_codes("acct-1", generate_totp(setup.secret, clock()), META)
    assert len(fresh) == 10
    assert all(len(c) == 8 and c.isdigit() for c in fresh)

    stored = await credentials.get("acct-1")
    assert stored.backup_codes == fresh
    assert stored.backup_codes_generated_at == _at(T0 + 3600)
    assert audit.attempts[-1].failure_reason == "Backup codes regenerated"

    stale = [c for c in setup.backup_codes if c not in fresh][0]
    assert not (await auth.verify_two_factor("acct-1", stale)).success
    assert (await auth.verify_two_factor("acct-1", fresh[0])).method is AttemptMethod.BACKUP_CODE


@pytest.mark.asyncio
async def test_regenerate_with_bad_code_raises(auth, credentials, audit, clock):
    setup = await _enrolled(auth, clock)

    with pytest.raises(InvalidVerificationCode, match="Invalid verification code"):
        await auth.generate_new_backup_codes("acct-1", _wrong_code(setup.secret, clock()))
    with pytest.raises(PermissionError):
        await auth.generate_new_backup_codes("acct-1", setup.backup_codes[0])

    assert (await credentials.get("acct-1")).backup_codes == setup.backup_codes
    assert [a.success for a in audit.attempts[-2:]] == [False, False]


@pytest.mark.asyncio
async def test_regenerate_requires_enabled(auth):
    with pytest.raises(TwoFactorStateError, match=NOT_ENABLED):
        await auth.generate_new_backup_codes("acct-1", "123456")


# ----------------------------------------------------------- emergency disable


@pytest.mark.asyncio
async def test_emergency_disable_is_audited(auth, credentials, audit, clock):
    await _enrolled(auth, clock)
    clock.advance(45)

    assert await auth.emergency_disable_two_factor("acct-1", "admin-1", reason="lost phone") is True

    [action] = audit.admin_actions
    assert action.action == EMERGENCY_DISABLE_ACTION
    assert action.target_account_id == "acct-1"
    assert action.admin_account_id == "admin-1"
    assert action.reason == "lost phone"
    assert action.timestamp == _at(T0 + 45)

    stored = await credentials.get("acct-1")
    assert stored.enabled is False
    assert stored.secret == ""
    assert stored.emergency_disabled_by == "admin-1"
    assert stored.emergency_disabled_at == _at(T0 + 45)


@pytest.mark.asyncio
async def test_emergency_disable_without_setup_is_still_audited(auth, credentials, audit, clock):
    with pytest.raises(AccountNotFoundError):
        await auth.emergency_disable_two_factor("ghost", "admin-1")
    assert audit.admin_actions == []

    assert await auth.emergency_disable_two_factor("acct-1", "admin-1") is True

    [action] = audit.admin_actions
    assert (action.target_account_id, action.reason) == ("acct-1", "Emergency 2FA disable")
    stored = await credentials.get("acct-1")
    assert stored.enabled is False
    assert stored.emergency_disabled_by == "admin-1"
    assert stored.emergency_disabled_at == _at(T0)


@pytest.mark.asyncio
async def test_emergency_disable_aborts_when_admin_audit_fails(credentials, accounts, clock):
    auth = TwoFactorAuthenticator(
        credentials=credentials, audit=FailingAuditLog(fail_admin=True), accounts=accounts, clock=clock
    )
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock()))

    with pytest.raises(RuntimeError):
        await auth.emergency_disable_two_factor("acct-1", "admin-1")
    assert (await credentials.get("acct-1")).enabled is True


# ------------------------------------------------------------------ reads/misc


@pytest.mark.asyncio
async def test_status_without_credential_has_no_side_effects(auth, credentials, audit):
    status = await auth.get_two_factor_status("acct-1")
    assert status.enabled is False
    assert status.backup_codes_remaining == 0
    assert status.setup_at is None and status.device_name is None
    assert await credentials.get("acct-1") is None
    assert audit.attempts == []


@pytest.mark.asyncio
async def test_requires_two_factor_by_role(auth, credentials, audit, accounts):
    assert await auth.requires_two_factor("acct-1") is False
    assert await auth.requires_two_factor("admin-1") is True
    assert await auth.requires_two_factor("admin-2") is True
    assert await auth.requires_two_factor("ghost") is False

    narrow = TwoFactorAuthenticator(
        credentials=credentials, audit=audit, accounts=accounts, elevated_roles=frozenset({"super_admin"})
    )
    assert await narrow.requires_two_factor("admin-2") is False

    detached = TwoFactorAuthenticator(credentials=credentials, audit=audit)
    assert await detached.requires_two_factor("admin-1") is False


@pytest.mark.asyncio
async def test_attempt_history_newest_first(auth, clock):
    setup = await _enrolled(auth, clock)
    for _ in range(4):
        clock.advance(30)
        await auth.verify_two_factor("acct-1", _wrong_code(setup.secret, clock()))

    history = await auth.get_two_factor_attempts("acct-1")
    assert len(history) == 5
    assert [a.timestamp for a in history] == sorted((a.timestamp for a in history), reverse=True)
    assert history[-1].failure_reason == "Setup completed"

    assert len(await auth.get_two_factor_attempts("acct-1", limit=2)) == 2
    assert await auth.get_two_factor_attempts("acct-1", limit=0) == []
    assert await auth.get_two_factor_attempts("admin-1") == []


@pytest.mark.asyncio
async def test_audit_failure_does_not_change_outcome(credentials, accounts, metrics, clock, caplog):
    auth = TwoFactorAuthenticator(
        credentials=credentials, audit=FailingAuditLog(), accounts=accounts, metrics=metrics, clock=clock
    )
    setup = await auth.setup_two_factor("acct-1", "a@b.com")

    with caplog.at_level(logging.ERROR, logger="fahampesa.audit"):
        assert await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock())) is True
        result = await auth.verify_two_factor("acct-1", setup.backup_codes[0])

    assert result.success
    assert metrics.snapshot()["audit_failures"] == 2
    assert any("failed to write 2FA attempt record" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_metrics_follow_attempts_and_transitions(auth, metrics, clock):
    setup = await _enrolled(auth, clock)
    await auth.verify_two_factor("acct-1", setup.backup_codes[0])
    await auth.verify_two_factor("acct-1", _wrong_code(setup.secret, clock()))

    snap = metrics.snapshot()
    assert snap["attempts"] == {"backup_code:success": 1, "totp:failure": 1, "totp:success": 1}
    assert snap["transitions"] == {"enable": 1, "setup": 1}
    assert b"fahampesa_two_factor_attempts_total" in metrics.export_prometheus()


@pytest.mark.asyncio
async def test_sealed_secret_round_trip(credentials, audit, accounts, clock):
    vault = SecretVault()
    auth = TwoFactorAuthenticator(credentials=credentials, audit=audit, accounts=accounts, vault=vault, clock=clock)

    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    stored = (await credentials.get("acct-1")).secret
    assert SecretVault.is_sealed(stored)
    assert setup.secret not in stored
    assert vault.unseal(stored, context="acct-1") == setup.secret
    with pytest.raises(VaultError):
        vault.unseal(stored, context="admin-1")

    assert await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock()))
    assert (await auth.verify_two_factor("acct-1", generate_totp(setup.secret, clock()))).success


@pytest.mark.asyncio
async def test_from_settings_applies_configuration(credentials, audit, accounts, clock):
    key = base64.b64encode(b"k" * 32).decode()
    settings = TwoFactorSettings(issuer="Faham Pesa", drift_window=0, master_key_b64=key)
    auth = TwoFactorAuthenticator.from_settings(settings, credentials=credentials, audit=audit, accounts=accounts, clock=clock)

    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    assert "issuer=Faham%20Pesa" in setup.provisioning_uri
    assert auth.vault is not None
    assert SecretVault.is_sealed((await credentials.get("acct-1")).secret)

    previous = generate_totp(setup.secret, clock() - 30)
    if previous != generate_totp(setup.secret, clock()):
        assert await auth.enable_two_factor("acct-1", previous) is False


@pytest.mark.asyncio
async def test_first_setup_secret_is_dead_after_second_setup(auth, clock):
    first = await auth.setup_two_factor("acct-1", "a@b.com")
    second = await auth.setup_two_factor("acct-1", "a@b.com")
    old_code = generate_totp(first.secret, clock())
    valid = {generate_totp(second.secret, clock() + k * 30) for k in (-1, 0, 1)}

    if old_code not in valid:
        assert await auth.enable_two_factor("acct-1", old_code) is False
    assert await auth.enable_two_factor("acct-1", generate_totp(second.secret, clock())) is True


@pytest.mark.asyncio
async def test_each_code_check_writes_one_attempt(auth, audit, clock):
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    wrong = _wrong_code(setup.secret, clock())

    async def delta(call):
        before = len(audit.attempts)
        await call
        return len(audit.attempts) - before

    assert await delta(auth.enable_two_factor("acct-1", wrong)) == 1
    assert await delta(auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock()))) == 1
    assert await delta(auth.verify_two_factor("acct-1", wrong)) == 1
    assert await delta(auth.verify_two_factor("acct-1", setup.backup_codes[0])) == 1
    assert await delta(auth.get_two_factor_status("acct-1")) == 0
    assert await delta(auth.requires_two_factor("acct-1")) == 0
    assert await delta(auth.get_two_factor_attempts("acct-1")) == 0
    assert await delta(auth.disable_two_factor("acct-1", wrong)) == 1
    assert await delta(auth.disable_two_factor("acct-1", generate_totp(setup.secret, clock()))) == 1


@pytest.mark.asyncio
async def test_full_happy_path(auth, clock):
    setup = await auth.setup_two_factor("acct-1", "a@b.com")
    assert len(setup.backup_codes) == 10

    assert await auth.enable_two_factor("acct-1", generate_totp(setup.secret, clock())) is True
    assert (await auth.get_two_factor_status("acct-1")).enabled is True

    clock.advance(30)
    totp = await auth.verify_two_factor("acct-1", generate_totp(setup.secret, clock()))
    assert totp.success and totp.method is AttemptMethod.TOTP

    backup = await auth.verify_two_factor("acct-1", setup.backup_codes[0])
    assert backup.success and backup.method is AttemptMethod.BACKUP_CODE
    assert (await auth.get_two_factor_status("acct-1")).backup_codes_remaining == 9


@pytest.mark.asyncio
async def test_sealed_secret_without_vault_raises(credentials, audit, accounts, clock):
    sealed = TwoFactorAuthenticator(
        credentials=credentials, audit=audit, accounts=accounts, vault=SecretVault(), clock=clock
    )
    setup = await sealed.setup_two_factor("acct-1", "a@b.com")
    assert await sealed.enable_two_factor("acct-1", generate_totp(setup.secret, clock()))
    recorded = len(audit.attempts)

    plain = TwoFactorAuthenticator(credentials=credentials, audit=audit, accounts=accounts, clock=clock)
    with pytest.raises(VaultError):
        await plain.verify_two_factor("acct-1", generate_totp(setup.secret, clock()))
    with pytest.raises(VaultError):
        await plain.disable_two_factor("acct-1", generate_totp(setup.secret, clock()))

    assert len(audit.attempts) == recorded
    assert (await credentials.get("acct-1")).enabled is True
