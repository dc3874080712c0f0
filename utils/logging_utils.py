"""Masking of two-factor secrets and codes in log records."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable

SENSITIVE_KEYS = {
    "secret",
    "code",
    "otp",
    "token",
    "backup_codes",
    "manual_entry_key",
    "provisioning_uri",
    "master_key",
    "password",
}
MASK = "***"

# bare 6-digit TOTP values and 8-digit backup codes
_CODE_RE = re.compile(r"(?<!\d)\d{6}(?:\d{2})?(?!\d)")
_SECRET_RE = re.compile(r"(?<![A-Z2-7])[A-Z2-7]{16,}(?![A-Z2-7])")
_URI_SECRET_RE = re.compile(r"(secret=)[^&\s]+", re.IGNORECASE)


def _mask_value(value: Any) -> Any:
    if isinstance(value, str):
        value = _URI_SECRET_RE.sub(rf"\1{MASK}", value)
        value = _SECRET_RE.sub(MASK, value)
        return _CODE_RE.sub(MASK, value)
    return value


def mask_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {k: (MASK if str(k).lower() in SENSITIVE_KEYS else mask_payload(v)) for k, v in payload.items()}
    if isinstance(payload, (list, tuple, set)):
        return type(payload)(mask_payload(v) for v in payload)
    if isinstance(payload, str):
        return _mask_value(payload)
    return payload


class SensitiveDataFilter(logging.Filter):
    """Masks secrets and one-time codes before a record is formatted."""

    def __init__(self, *, fields: Iterable[str] = ()):
        super().__init__()
        self._fields = {*(f.lower() for f in fields), *SENSITIVE_KEYS}

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, dict):
            record.msg = mask_payload(record.msg)
            return True
        # render first so masking cannot break %-formatting
        msg = record.getMessage()
        for name in self._fields:
            msg = re.sub(fr"\b{name}=([^\s&]+)", f"{name}={MASK}", msg, flags=re.IGNORECASE)
        record.msg = _mask_value(msg)
        record.args = None
        return True


def install_sensitive_filter(logger: logging.Logger, *, fields: Iterable[str] = ()) -> None:
    if any(isinstance(f, SensitiveDataFilter) for f in logger.filters):
        return
    logger.addFilter(SensitiveDataFilter(fields=fields))
