# services/twofactor_service.py
from __future__ import annotations

import time
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from db.crud_twofactor import SqlAccountDirectory, SqlAuditLog, SqlCredentialStore
from db.session import build_engine, build_session_factory, init_db_schema, shutdown_engine
from monitoring.observability import OBSERVABILITY, TwoFactorMetrics
from services.security import TwoFactorAuthenticator
from utils.config import TwoFactorSettings, get_settings
from utils.structured_logging import get_logger

LOG = get_logger("fahampesa.twofactor_service")


class TwoFactorService:
    """SQL-backed authenticator plus the engine that feeds it.

    One instance per process; callers share ``service.authenticator``.
    """

    def __init__(
        self,
        settings: Optional[TwoFactorSettings] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        metrics: Optional[TwoFactorMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self._engine = engine or build_engine(self.settings.db_url)
        sessions = build_session_factory(self._engine)
        self.accounts = SqlAccountDirectory(sessions)
        self.credentials = SqlCredentialStore(sessions)
        self.audit = SqlAuditLog(sessions)
        self.authenticator = TwoFactorAuthenticator.from_settings(
            self.settings,
            credentials=self.credentials,
            audit=self.audit,
            accounts=self.accounts,
            metrics=metrics if metrics is not None else OBSERVABILITY,
            clock=clock,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def start(self) -> None:
        await init_db_schema(self._engine)
        LOG.info("two-factor service ready", extra={"settings": self.settings.describe()})

    async def close(self) -> None:
        await shutdown_engine(self._engine)
