# db/session.py
from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class Base(DeclarativeBase):
    """Declarative base for every table in db.models."""
    pass


# ──────────────────────────────────────────────────────────────────────────────
# URL normalisation
#  - sqlite:// → sqlite+aiosqlite://
#  - relative SQLite paths are resolved against the project root
# ──────────────────────────────────────────────────────────────────────────────
def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url


def normalize_db_url(raw: Optional[str]) -> str:
    from utils.config import DEFAULT_DB_URL

    url = (raw or DEFAULT_DB_URL).strip()
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    prefix = "sqlite+aiosqlite:///"
    if url.startswith(prefix) and not _is_memory_sqlite(url):
        p = Path(url[len(prefix):])
        if not p.is_absolute():
            p = (PROJECT_ROOT / p).resolve()
        p.parent.mkdir(parents=True, exist_ok=True)
        return f"{prefix}{p.as_posix()}"
    return url


def build_engine(url: Optional[str] = None, *, echo: bool = False) -> AsyncEngine:
    db_url = normalize_db_url(url)
    kwargs = dict(future=True, echo=echo)
    if _is_memory_sqlite(db_url):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    engine = create_async_engine(db_url, **kwargs)

    if engine.url.get_backend_name().startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore
            c = dbapi_connection.cursor()
            c.execute("PRAGMA foreign_keys=ON;")
            c.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db_schema(engine: AsyncEngine) -> None:
    """Create all tables (no migrations: the schema is small and additive)."""
    import db.models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def shutdown_engine(engine: AsyncEngine) -> None:
    await engine.dispose()


async def db_healthcheck(engine: AsyncEngine) -> bool:
    try:
        async with engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1;")
        return True
    except Exception:
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Unit-test helper (in-memory SQLite)
# ──────────────────────────────────────────────────────────────────────────────
def make_test_engine_and_session(
    url: str = "sqlite+aiosqlite:///:memory:",
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    test_engine = build_engine(url)
    return test_engine, build_session_factory(test_engine)


__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "db_healthcheck",
    "init_db_schema",
    "make_test_engine_and_session",
    "normalize_db_url",
    "shutdown_engine",
]
