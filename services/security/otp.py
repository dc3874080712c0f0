"""TOTP primitives (RFC 4226 / RFC 6238) compatible with authenticator apps.

Period, digit count and digest are fixed at 30s / 6 digits / SHA-1: these are
what Google Authenticator, Authy and friends assume when a provisioning URI
carries no ``period``/``digits``/``algorithm`` parameters.
"""
from __future__ import annotations

import base64
import re
import secrets
import time
from datetime import datetime, timezone
from io import BytesIO
from typing import List, Optional
from urllib.parse import quote

import pyotp

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
TIME_STEP = 30
DIGITS = 6
SECRET_LENGTH = 32
BACKUP_CODE_COUNT = 10
BACKUP_CODE_MIN = 10_000_000
BACKUP_CODE_MAX = 99_999_999

_WHITESPACE_RE = re.compile(r"\s+")


def base32_decode(encoded: str) -> bytes:
    """Decode Base32 text leniently.

    Decoding stops at the first ``=`` and silently skips anything outside the
    alphabet, so a grouped manual-entry key like ``ABCD EFGH`` decodes the same
    as ``ABCDEFGH``.
    """
    bits = 0
    value = 0
    out = bytearray()
    for char in encoded.upper():
        if char == "=":
            break
        index = BASE32_ALPHABET.find(char)
        if index == -1:
            continue
        value = ((value << 5) | index) & 0xFFFF
        bits += 5
        if bits >= 8:
            out.append((value >> (bits - 8)) & 0xFF)
            bits -= 8
    return bytes(out)


def _totp(secret: str) -> pyotp.TOTP:
    # pyotp wants strict Base32, so re-encode the leniently decoded key
    key = base64.b32encode(base32_decode(secret)).decode("ascii")
    return pyotp.TOTP(key, digits=DIGITS, interval=TIME_STEP)


def _at(for_time: Optional[float]) -> datetime:
    if for_time is None:
        for_time = time.time()
    return datetime.fromtimestamp(for_time, timezone.utc)


def generate_totp(secret: str, for_time: Optional[float] = None) -> str:
    """Return the 6-digit TOTP for ``secret`` at ``for_time`` (defaults to now)."""
    return _totp(secret).at(_at(for_time))


def normalize_code(code: str) -> str:
    return _WHITESPACE_RE.sub("", str(code or ""))


def verify_totp(secret: str, code: str, window: int = 1, for_time: Optional[float] = None) -> bool:
    """Check ``code`` against the ``2 * window + 1`` steps around ``for_time``."""
    candidate = normalize_code(code)
    if len(candidate) != DIGITS or not candidate.isdigit():
        return False
    return _totp(secret).verify(candidate, for_time=_at(for_time), valid_window=window)


def generate_secret() -> str:
    """32 Base32 characters (160 bits) from the system CSPRNG."""
    return pyotp.random_base32(length=SECRET_LENGTH)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    span = BACKUP_CODE_MAX - BACKUP_CODE_MIN + 1
    return [str(BACKUP_CODE_MIN + secrets.randbelow(span)) for _ in range(count)]


def manual_entry_key(secret: str) -> str:
    """Secret grouped in blocks of four for typing into an authenticator app."""
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4)) or secret


def _uri_component(value: str) -> str:
    # Same unreserved set as JavaScript's encodeURIComponent.
    return quote(value, safe="!~*'()")


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    enc_issuer = _uri_component(issuer)
    return (
        f"otpauth://totp/{enc_issuer}:{_uri_component(account_label)}"
        f"?secret={secret}&issuer={enc_issuer}"
    )


def qr_png_data_url(text: str) -> str:
    """Render ``text`` as a QR code PNG ``data:`` URL."""
    import qrcode

    img = qrcode.make(text)
    buf = BytesIO()
    img.save(buf, "PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


__all__ = [
    "BACKUP_CODE_COUNT",
    "DIGITS",
    "TIME_STEP",
    "base32_decode",
    "generate_backup_codes",
    "generate_secret",
    "generate_totp",
    "manual_entry_key",
    "normalize_code",
    "provisioning_uri",
    "qr_png_data_url",
    "verify_totp",
]
