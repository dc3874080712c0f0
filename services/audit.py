"""Audit trail helpers for two-factor attempts and privileged actions."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from monitoring.observability import TwoFactorMetrics
from utils.structured_logging import get_logger

if TYPE_CHECKING:
    from services.security.records import AdminAction, TwoFactorAttempt
    from services.security.stores import AuditLog

LOG = get_logger("fahampesa.audit")


async def record_attempt(
    audit: AuditLog,
    attempt: TwoFactorAttempt,
    *,
    metrics: Optional[TwoFactorMetrics] = None,
) -> bool:
    """Append ``attempt``; a failing audit backend is logged, never raised.

    Called only after the security decision has been made, so the return value
    is informational.
    """
    if metrics is not None:
        metrics.record_attempt(method=attempt.method.value, success=attempt.success)
    try:
        await audit.append(attempt)
    except Exception:
        LOG.exception(
            "failed to write 2FA attempt record",
            extra={"account_id": attempt.account_id, "method": attempt.method.value},
        )
        if metrics is not None:
            metrics.record_audit_failure()
        return False
    return True


async def record_admin_action(audit: AuditLog, action: AdminAction) -> None:
    """Mandatory audit write: failures propagate to the caller."""
    await audit.append_admin_action(action)
    LOG.warning(
        "admin action %s on %s by %s",
        action.action,
        action.target_account_id,
        action.admin_account_id,
    )
