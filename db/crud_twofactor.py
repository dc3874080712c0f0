# db/crud_twofactor.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, desc, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.security.records import (
    Account,
    AdminAction,
    AttemptMethod,
    TwoFactorAttempt,
    TwoFactorCredential,
)
from services.security.stores import CREDENTIAL_FIELDS

from .models import AccountRow, AdminActionRow, BackupCodeRow, TwoFactorAttemptRow, TwoFactorCredentialRow

_SCALAR_FIELDS = tuple(sorted(CREDENTIAL_FIELDS - {"backup_codes"}))


# ──────────────────────────────────────────────────────────────────────────────
# Internal helpers
# ──────────────────────────────────────────────────────────────────────────────

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands DateTime(timezone=True) back as naive UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_credential(row: TwoFactorCredentialRow, codes: Iterable[str]) -> TwoFactorCredential:
    return TwoFactorCredential(
        secret=row.secret or "",
        backup_codes=list(codes),
        enabled=bool(row.enabled),
        device_name=row.device_name,
        setup_at=_as_utc(row.setup_at),
        enabled_at=_as_utc(row.enabled_at),
        last_used=_as_utc(row.last_used),
        disabled_at=_as_utc(row.disabled_at),
        backup_codes_generated_at=_as_utc(row.backup_codes_generated_at),
        emergency_disabled_at=_as_utc(row.emergency_disabled_at),
        emergency_disabled_by=row.emergency_disabled_by,
    )


def _row_to_attempt(row: TwoFactorAttemptRow) -> TwoFactorAttempt:
    return TwoFactorAttempt(
        id=row.id,
        account_id=row.account_id,
        account_email=row.account_email,
        success=bool(row.success),
        method=AttemptMethod(row.method),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=_as_utc(row.timestamp),  # type: ignore[arg-type]
        failure_reason=row.failure_reason,
    )


async def _load_codes(session: AsyncSession, account_id: str) -> List[str]:
    res = await session.execute(
        select(BackupCodeRow.code)
        .where(BackupCodeRow.account_id == account_id)
        .order_by(BackupCodeRow.position)
    )
    return [c for (c,) in res.all()]


async def _replace_codes(session: AsyncSession, account_id: str, codes: List[str]) -> None:
    await session.execute(delete(BackupCodeRow).where(BackupCodeRow.account_id == account_id))
    if codes:
        await session.execute(
            insert(BackupCodeRow),
            [{"account_id": account_id, "position": i, "code": str(c)} for i, c in enumerate(codes)],
        )


# ──────────────────────────────────────────────────────────────────────────────
# Credential store
# ──────────────────────────────────────────────────────────────────────────────

class SqlCredentialStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get(self, account_id: str) -> Optional[TwoFactorCredential]:
        async with self._sessions() as session:
            row = await session.get(TwoFactorCredentialRow, account_id)
            if row is None:
                return None
            return _row_to_credential(row, await _load_codes(session, account_id))

    async def set(self, account_id: str, credential: TwoFactorCredential) -> None:
        values = {name: getattr(credential, name) for name in _SCALAR_FIELDS}
        async with self._sessions.begin() as session:
            row = await session.get(TwoFactorCredentialRow, account_id)
            if row is None:
                session.add(TwoFactorCredentialRow(account_id=account_id, **values))
                await session.flush()
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            await _replace_codes(session, account_id, list(credential.backup_codes))

    async def update(self, account_id: str, **fields: Any) -> None:
        unknown = set(fields) - CREDENTIAL_FIELDS
        if unknown:
            raise KeyError(f"Unknown credential fields: {sorted(unknown)}")
        codes = fields.pop("backup_codes", None)
        async with self._sessions.begin() as session:
            if fields:
                res = await session.execute(
                    update(TwoFactorCredentialRow)
                    .where(TwoFactorCredentialRow.account_id == account_id)
                    .values(**fields)
                )
                found = res.rowcount > 0
            else:
                found = await session.get(TwoFactorCredentialRow, account_id) is not None
            if not found:
                raise KeyError(f"No credential for account {account_id}")
            if codes is not None:
                await _replace_codes(session, account_id, list(codes))

    async def remove_backup_code(self, account_id: str, code: str, *, used_at: datetime) -> bool:
        """Conditional DELETE; the affected row count decides who consumed the code."""
        async with self._sessions.begin() as session:
            res = await session.execute(
                select(BackupCodeRow.id)
                .where(BackupCodeRow.account_id == account_id, BackupCodeRow.code == code)
                .order_by(BackupCodeRow.position)
                .limit(1)
            )
            code_id = res.scalar_one_or_none()
            if code_id is None:
                return False
            deleted = await session.execute(delete(BackupCodeRow).where(BackupCodeRow.id == code_id))
            if deleted.rowcount != 1:
                return False
            await session.execute(
                update(TwoFactorCredentialRow)
                .where(TwoFactorCredentialRow.account_id == account_id)
                .values(last_used=used_at)
            )
            return True


# ──────────────────────────────────────────────────────────────────────────────
# Audit log
# ──────────────────────────────────────────────────────────────────────────────

class SqlAuditLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def append(self, attempt: TwoFactorAttempt) -> None:
        async with self._sessions.begin() as session:
            session.add(
                TwoFactorAttemptRow(
                    id=attempt.id,
                    account_id=attempt.account_id,
                    account_email=attempt.account_email,
                    success=attempt.success,
                    method=attempt.method.value,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    timestamp=attempt.timestamp,
                    failure_reason=attempt.failure_reason,
                )
            )

    async def append_admin_action(self, action: AdminAction) -> None:
        async with self._sessions.begin() as session:
            session.add(
                AdminActionRow(
                    id=action.id,
                    action=action.action,
                    target_account_id=action.target_account_id,
                    admin_account_id=action.admin_account_id,
                    timestamp=action.timestamp,
                    reason=action.reason,
                )
            )

    async def query(self, account_id: str, limit: int = 50) -> List[TwoFactorAttempt]:
        async with self._sessions() as session:
            res = await session.execute(
                select(TwoFactorAttemptRow)
                .where(TwoFactorAttemptRow.account_id == account_id)
                .order_by(desc(TwoFactorAttemptRow.timestamp), desc(TwoFactorAttemptRow.pk))
                .limit(max(0, int(limit)))
            )
            return [_row_to_attempt(r) for r in res.scalars().all()]

    async def admin_actions_for(self, account_id: str) -> List[Dict[str, Any]]:
        async with self._sessions() as session:
            res = await session.execute(
                select(AdminActionRow)
                .where(AdminActionRow.target_account_id == account_id)
                .order_by(desc(AdminActionRow.timestamp))
            )
            return [
                {
                    "id": r.id,
                    "action": r.action,
                    "admin_account_id": r.admin_account_id,
                    "timestamp": _as_utc(r.timestamp),
                    "reason": r.reason,
                }
                for r in res.scalars().all()
            ]


# ──────────────────────────────────────────────────────────────────────────────
# Accounts
# ──────────────────────────────────────────────────────────────────────────────

class SqlAccountDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._sessions() as session:
            row = await session.get(AccountRow, account_id)
            if row is None:
                return None
            return Account(account_id=row.id, email=row.email, role=row.role)

    async def upsert_account(self, account_id: str, *, email: str = "", role: str = "user") -> Account:
        async with self._sessions.begin() as session:
            row = await session.get(AccountRow, account_id)
            if row is None:
                session.add(AccountRow(id=account_id, email=email, role=role))
            else:
                row.email = email
                row.role = role
        return Account(account_id=account_id, email=email, role=role)


__all__ = ["SqlAccountDirectory", "SqlAuditLog", "SqlCredentialStore"]
