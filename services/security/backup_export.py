"""Plain-text backup code sheet offered for download after setup."""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from utils.config import DEFAULT_ISSUER

INSTRUCTIONS = (
    "Use these codes if you lose access to your authenticator app",
    "Each code can only be used once",
    "Generate new codes if you use all of them",
    "Keep these codes secure and private",
)


def render_backup_codes(
    codes: Sequence[str],
    email: str,
    generated_at: datetime,
    *,
    product: str = DEFAULT_ISSUER,
) -> str:
    lines = [
        f"{product} Two-Factor Authentication Backup Codes",
        f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        f"Email: {email}",
        "",
        "IMPORTANT: Store these codes in a safe place. Each code can only be used once.",
        "",
    ]
    lines.extend(f"{i}. {code}" for i, code in enumerate(codes, start=1))
    lines.append("")
    lines.append("Instructions:")
    lines.extend(f"- {line}" for line in INSTRUCTIONS)
    return "\n".join(lines)


def backup_codes_filename(generated_at: datetime, *, product: str = DEFAULT_ISSUER) -> str:
    millis = int(generated_at.timestamp() * 1000)
    return f"{product.lower()}-2fa-backup-codes-{millis}.txt"
