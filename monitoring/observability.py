"""Prometheus counters for two-factor verification and enrollment."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Tuple

from prometheus_client import CollectorRegistry, Counter, generate_latest


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class TwoFactorMetrics:
    """Registry of 2FA counters plus a small in-process snapshot."""

    def __init__(self) -> None:
        self._registry = CollectorRegistry()
        self._attempts = Counter(
            "fahampesa_two_factor_attempts_total",
            "Two-factor verification attempts by method and outcome",
            labelnames=("method", "outcome"),
            registry=self._registry,
        )
        self._transitions = Counter(
            "fahampesa_two_factor_transitions_total",
            "Enrollment state transitions (setup, enable, disable, ...)",
            labelnames=("transition",),
            registry=self._registry,
        )
        self._audit_failures = Counter(
            "fahampesa_two_factor_audit_failures_total",
            "Audit records that could not be written",
            registry=self._registry,
        )
        self._lock = threading.Lock()
        self._attempt_counts: Dict[Tuple[str, str], int] = {}
        self._transition_counts: Dict[str, int] = {}
        self._audit_failure_count = 0
        self._last_event_at: str = ""

    def record_attempt(self, *, method: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        self._attempts.labels(method, outcome).inc()
        with self._lock:
            key = (method, outcome)
            self._attempt_counts[key] = self._attempt_counts.get(key, 0) + 1
            self._last_event_at = _utcnow()

    def record_transition(self, transition: str) -> None:
        self._transitions.labels(transition).inc()
        with self._lock:
            self._transition_counts[transition] = self._transition_counts.get(transition, 0) + 1
            self._last_event_at = _utcnow()

    def record_audit_failure(self) -> None:
        self._audit_failures.inc()
        with self._lock:
            self._audit_failure_count += 1

    def export_prometheus(self) -> bytes:
        return generate_latest(self._registry)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "attempts": {f"{m}:{o}": n for (m, o), n in sorted(self._attempt_counts.items())},
                "transitions": dict(sorted(self._transition_counts.items())),
                "audit_failures": self._audit_failure_count,
                "last_event_at": self._last_event_at or None,
            }


OBSERVABILITY = TwoFactorMetrics()

__all__ = ["OBSERVABILITY", "TwoFactorMetrics"]
