# utils/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_ISSUER = "FahamPesa"
DEFAULT_ELEVATED_ROLES = frozenset({"super_admin", "admin"})
DEFAULT_DB_URL = "sqlite+aiosqlite:///data/fahampesa_2fa.db"


# =============================================================================
# Helpers
# =============================================================================

def _exists(p: Optional[str]) -> bool:
    return bool(p) and os.path.exists(p)  # type: ignore[arg-type]


def _read_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not _exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _parse_int(val: Any, default: int) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


def _parse_roles(val: Any) -> Optional[FrozenSet[str]]:
    if val is None:
        return None
    if isinstance(val, str):
        items: List[str] = [v for v in val.replace(";", ",").split(",")]
    elif isinstance(val, (list, tuple, set, frozenset)):
        items = [str(v) for v in val]
    else:
        return None
    roles = frozenset(v.strip().lower() for v in items if v and v.strip())
    return roles or None


def _redact(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 6:
        return "***"
    return s[:3] + "…" + s[-3:]


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class TwoFactorSettings:
    issuer: str = DEFAULT_ISSUER
    drift_window: int = 1
    elevated_roles: FrozenSet[str] = field(default_factory=lambda: DEFAULT_ELEVATED_ROLES)
    attempt_history_limit: int = 50
    db_url: str = DEFAULT_DB_URL
    master_key_b64: Optional[str] = None

    def with_overrides(self, **changes: Any) -> "TwoFactorSettings":
        return replace(self, **changes)

    def describe(self) -> Dict[str, Any]:
        """Settings safe to print or log."""
        return {
            "issuer": self.issuer,
            "drift_window": self.drift_window,
            "elevated_roles": sorted(self.elevated_roles),
            "attempt_history_limit": self.attempt_history_limit,
            "db_url": self.db_url,
            "master_key": _redact(self.master_key_b64),
        }


def load_env_files() -> None:
    """
    Load the first .env file found: $ENV_FILE, ./.env, ./configs/.env.
    Already-set environment variables win.
    """
    for p in (os.getenv("ENV_FILE"), ".env", os.path.join("configs", ".env")):
        if _exists(p):
            load_dotenv(p, override=False)
            break


def _yaml_section() -> Dict[str, Any]:
    for p in (os.getenv("TWOFACTOR_CONFIG"), "twofactor.yaml", os.path.join("configs", "twofactor.yaml")):
        data = _read_yaml(p)
        if data:
            node = data.get("twofactor", data)
            return node if isinstance(node, dict) else {}
    return {}


def load_settings(*, use_env_files: bool = True) -> TwoFactorSettings:
    """
    YAML file first, then environment variables on top:
      FAHAMPESA_2FA_ISSUER, FAHAMPESA_2FA_WINDOW, FAHAMPESA_2FA_ELEVATED_ROLES,
      FAHAMPESA_2FA_HISTORY_LIMIT, DB_URL, FAHAMPESA_MASTER_KEY
    """
    if use_env_files:
        load_env_files()
    node = _yaml_section()
    base = TwoFactorSettings()

    issuer = os.getenv("FAHAMPESA_2FA_ISSUER") or node.get("issuer") or base.issuer
    window = _parse_int(os.getenv("FAHAMPESA_2FA_WINDOW", node.get("drift_window")), base.drift_window)
    roles = (
        _parse_roles(os.getenv("FAHAMPESA_2FA_ELEVATED_ROLES"))
        or _parse_roles(node.get("elevated_roles"))
        or base.elevated_roles
    )
    limit = _parse_int(
        os.getenv("FAHAMPESA_2FA_HISTORY_LIMIT", node.get("attempt_history_limit")),
        base.attempt_history_limit,
    )
    db_url = os.getenv("DB_URL") or node.get("db_url") or base.db_url
    master_key = os.getenv("FAHAMPESA_MASTER_KEY") or node.get("master_key") or None

    if window < 0:
        raise ValueError("drift_window must be >= 0")
    return TwoFactorSettings(
        issuer=str(issuer),
        drift_window=window,
        elevated_roles=roles,
        attempt_history_limit=max(1, limit),
        db_url=str(db_url),
        master_key_b64=master_key,
    )


@lru_cache(maxsize=1)
def get_settings() -> TwoFactorSettings:
    return load_settings()
