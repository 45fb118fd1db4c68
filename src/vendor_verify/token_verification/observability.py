"""Verification counters and bounded recent-event log (Phase 7)."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import threading
from typing import Any, Mapping

from .contracts import SCAN_OUTCOMES, Decision, utc_now

logger = logging.getLogger("vendor_verify.token_verification.observability")

_REQUIRED_COUNTERS: tuple[str, ...] = (
    *(f"outcome_{outcome}" for outcome in SCAN_OUTCOMES),
    "presentations",
    "anomaly_escalations",
    "guard_rejections",
    "unknown_tokens",
    "history_append_failures",
    "rotations",
    "issued",
    "admin_overrides",
    "reports_submitted",
    "reports_deduped",
)


class VerificationObservabilityError(ValueError):
    """Raised when observability inputs are invalid."""


@dataclass
class VerificationMetrics:
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 50
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_recent_events <= 0:
            raise VerificationObservabilityError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def record_decision(self, decision: Decision, *, escalated: bool) -> None:
        with self._lock:
            self.counters["presentations"] += 1
            self.counters[f"outcome_{decision.outcome}"] += 1
            if escalated:
                self.counters["anomaly_escalations"] += 1
        if escalated:
            product_id = decision.record.product_id if decision.record else None
            self._append_event(
                "anomaly_escalation",
                {"product_id": product_id, "reasons": list(decision.reasons)},
            )

    def record_unknown_token(self, *, token_fingerprint: str) -> None:
        self._bump("unknown_tokens")
        self._append_event("unknown_token", {"token_fingerprint": token_fingerprint})

    def record_guard_rejection(self, *, product_id: str) -> None:
        self._bump("guard_rejections")
        self._append_event("guard_rejection", {"product_id": product_id})

    def record_history_failure(self, *, product_id: str, reason_code: str) -> None:
        self._bump("history_append_failures")
        logger.warning("scan history append failed product_id=%s reason=%s", product_id, reason_code)
        self._append_event("history_append_failure", {"product_id": product_id, "reason_code": reason_code})

    def record_issue(self, *, product_id: str) -> None:
        self._bump("issued")
        self._append_event("issued", {"product_id": product_id})

    def record_rotation(self, *, product_id: str, attempts: int) -> None:
        self._bump("rotations")
        self._append_event("rotation", {"product_id": product_id, "attempts": attempts})

    def record_admin_override(self, *, product_id: str, kind: str, actor: str) -> None:
        self._bump("admin_overrides")
        self._append_event("admin_override", {"product_id": product_id, "kind": kind, "actor": actor})

    def record_report(self, *, product_id: str, deduped: bool) -> None:
        self._bump("reports_deduped" if deduped else "reports_submitted")
        self._append_event("report", {"product_id": product_id, "deduped": deduped})

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        with self._lock:
            return {
                "generated_at_utc": generated_at_utc or utc_now(),
                "metrics": dict(self.counters),
                "recent_events": list(self.recent_events),
            }

    def export(self, *, output_path: str | Path, generated_at_utc: str | None = None) -> dict[str, Any]:
        payload = self.snapshot(generated_at_utc=generated_at_utc)
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return payload

    def _bump(self, key: str) -> None:
        with self._lock:
            self.counters[key] += 1

    def _append_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self.recent_events.append(
                {
                    "event_type": str(event_type),
                    "ts_utc": utc_now(),
                    "payload": dict(payload),
                }
            )
            if len(self.recent_events) > self.max_recent_events:
                self.recent_events = self.recent_events[-self.max_recent_events :]
