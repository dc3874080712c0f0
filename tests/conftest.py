# tests/conftest.py
from __future__ import annotations

import pytest

from monitoring.observability import TwoFactorMetrics
from services.security import (
    Account,
    InMemoryAccountDirectory,
    InMemoryAuditLog,
    InMemoryCredentialStore,
    TwoFactorAuthenticator,
)

# 2033-05-18T03:33:20Z, aligned to a 30s step boundary
T0 = 2_000_000_010.0


class FakeClock:
    """Injectable unix-time source; tests move it explicitly."""

    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accounts() -> InMemoryAccountDirectory:
    directory = InMemoryAccountDirectory()
    directory.add(Account(account_id="acct-1", email="a@b.com", role="user"))
    directory.add(Account(account_id="admin-1", email="boss@b.com", role="super_admin"))
    directory.add(Account(account_id="admin-2", email="ops@b.com", role="Admin"))
    return directory


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def metrics() -> TwoFactorMetrics:
    return TwoFactorMetrics()


@pytest.fixture
def auth(credentials, audit, accounts, metrics, clock) -> TwoFactorAuthenticator:
    return TwoFactorAuthenticator(
        credentials=credentials,
        audit=audit,
        accounts=accounts,
        metrics=metrics,
        clock=clock,
    )
