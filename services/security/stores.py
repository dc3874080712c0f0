"""Collaborator contracts of the authenticator and in-memory implementations."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from services.security.records import Account, AdminAction, TwoFactorAttempt, TwoFactorCredential

CREDENTIAL_FIELDS = frozenset(f.name for f in fields(TwoFactorCredential))


class CredentialStore(Protocol):
    """Per-account two-factor credential documents."""

    async def get(self, account_id: str) -> Optional[TwoFactorCredential]:
        ...

    async def set(self, account_id: str, credential: TwoFactorCredential) -> None:
        ...

    async def update(self, account_id: str, **fields) -> None:
        """Partial update: fields not named are left untouched."""
        ...

    async def remove_backup_code(self, account_id: str, code: str, *, used_at: datetime) -> bool:
        """Atomically drop ``code`` if still present and stamp ``last_used``.

        Returns ``True`` only for the caller whose removal took effect.
        """
        ...


class AuditLog(Protocol):
    async def append(self, attempt: TwoFactorAttempt) -> None:
        ...

    async def append_admin_action(self, action: AdminAction) -> None:
        ...

    async def query(self, account_id: str, limit: int = 50) -> List[TwoFactorAttempt]:
        """Attempts for ``account_id``, newest first."""
        ...


class AccountDirectory(Protocol):
    async def get_account(self, account_id: str) -> Optional[Account]:
        ...


def _check_fields(names) -> None:
    unknown = set(names) - CREDENTIAL_FIELDS
    if unknown:
        raise KeyError(f"Unknown credential fields: {sorted(unknown)}")


@dataclass(slots=True)
class InMemoryCredentialStore:
    _docs: Dict[str, TwoFactorCredential] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    async def get(self, account_id: str) -> Optional[TwoFactorCredential]:
        with self._lock:
            doc = self._docs.get(account_id)
            return doc.copy() if doc is not None else None

    async def set(self, account_id: str, credential: TwoFactorCredential) -> None:
        with self._lock:
            self._docs[account_id] = credential.copy()

    async def update(self, account_id: str, **fields) -> None:
        _check_fields(fields)
        with self._lock:
            doc = self._docs.get(account_id)
            if doc is None:
                raise KeyError(f"No credential for account {account_id}")
            if "backup_codes" in fields:
                fields["backup_codes"] = list(fields["backup_codes"])
            self._docs[account_id] = doc.copy(**fields)

    async def remove_backup_code(self, account_id: str, code: str, *, used_at: datetime) -> bool:
        with self._lock:
            doc = self._docs.get(account_id)
            if doc is None or code not in doc.backup_codes:
                return False
            remaining = list(doc.backup_codes)
            remaining.remove(code)
            self._docs[account_id] = doc.copy(backup_codes=remaining, last_used=used_at)
            return True


@dataclass(slots=True)
class InMemoryAuditLog:
    attempts: List[TwoFactorAttempt] = field(default_factory=list)
    admin_actions: List[AdminAction] = field(default_factory=list)

    async def append(self, attempt: TwoFactorAttempt) -> None:
        self.attempts.append(attempt)

    async def append_admin_action(self, action: AdminAction) -> None:
        self.admin_actions.append(action)

    async def query(self, account_id: str, limit: int = 50) -> List[TwoFactorAttempt]:
        rows = [(a.timestamp, i, a) for i, a in enumerate(self.attempts) if a.account_id == account_id]
        rows.sort(key=lambda r: (r[0], r[1]), reverse=True)
        return [a for _, _, a in rows[: max(0, int(limit))]]


@dataclass(slots=True)
class InMemoryAccountDirectory:
    accounts: Dict[str, Account] = field(default_factory=dict)

    def add(self, account: Account) -> Account:
        self.accounts[account.account_id] = account
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)


__all__ = [
    "AccountDirectory",
    "AuditLog",
    "CREDENTIAL_FIELDS",
    "CredentialStore",
    "InMemoryAccountDirectory",
    "InMemoryAuditLog",
    "InMemoryCredentialStore",
]
