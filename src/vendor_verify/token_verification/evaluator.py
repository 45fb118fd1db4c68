"""Presentation classification and side-effect application (Phase 5)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from .anomaly import AnomalyAssessment, assess_window
from .config import VerificationPolicy
from .contracts import (
    OUTCOME_ALREADY_USED,
    OUTCOME_BLOCKED,
    OUTCOME_EXPIRED,
    OUTCOME_INVALID,
    OUTCOME_VALID,
    Decision,
    EvaluateCommand,
    ScanHistoryEntry,
    TokenContractError,
    TokenRecord,
    format_utc,
    parse_utc,
    token_fingerprint,
)
from .errors import StoreUnavailableError, VerificationError, VerificationInputError, reason_code
from .geolocation import GeolocationResolver, normalize_source_address
from .lifecycle import apply_command
from .observability import VerificationMetrics
from .store import ScanHistoryStore, TokenRecordStore

logger = logging.getLogger("vendor_verify.token_verification.evaluator")

MESSAGE_UNKNOWN = "token not recognised"
MESSAGE_BLANK = "token is required"
MESSAGE_NOT_ACTIVATED = "product not yet activated by vendor"
MESSAGE_EXPIRED = "token has expired"
MESSAGE_BLOCKED = "token is blocked"

REASON_CONCURRENT_UPDATE = "CONCURRENT_UPDATE"

_USER_AGENT_MAX = 300


@dataclass
class VerificationEngine:
    policy: VerificationPolicy
    records: TokenRecordStore
    history: ScanHistoryStore
    geolocation: GeolocationResolver
    metrics: VerificationMetrics = field(default_factory=VerificationMetrics)

    def evaluate_presentation(
        self,
        token: str | None,
        source_address: str | None,
        scanned_at_utc: str | datetime | None = None,
        *,
        user_agent: str | None = None,
    ) -> Decision:
        if scanned_at_utc:
            try:
                now_dt = parse_utc(scanned_at_utc, field_name="scanned_at_utc")
            except TokenContractError as exc:
                raise VerificationInputError("SCANNED_AT_INVALID", str(exc)) from exc
        else:
            now_dt = datetime.now(tz=timezone.utc)
        now_utc = format_utc(now_dt)
        raw_token = str(token or "").strip()
        address = normalize_source_address(
            source_address,
            sentinel_address=self.policy.sentinel_source_address,
            remap_loopback=self.policy.remap_loopback,
        )

        if not raw_token:
            decision = Decision(
                outcome=OUTCOME_INVALID,
                expired=False,
                flagged=False,
                record=None,
                scanned_at_utc=now_utc,
                message=MESSAGE_BLANK,
            )
            self.metrics.record_decision(decision, escalated=False)
            return decision

        try:
            record = self.records.find_by_token(raw_token)
        except StoreUnavailableError:
            logger.error("record lookup failed for token_fp=%s", token_fingerprint(raw_token))
            raise

        if record is None:
            fingerprint = token_fingerprint(raw_token)
            logger.info("unknown token presented token_fp=%s source=%s", fingerprint, address)
            self.metrics.record_unknown_token(token_fingerprint=fingerprint)
            decision = Decision(
                outcome=OUTCOME_INVALID,
                expired=False,
                flagged=False,
                record=None,
                scanned_at_utc=now_utc,
                message=MESSAGE_UNKNOWN,
            )
            self.metrics.record_decision(decision, escalated=False)
            return decision

        expired = record.is_expired(now_dt)
        baseline, message = _baseline_outcome(record, expired=expired)
        location = self.geolocation.resolve(address)

        assessment: AnomalyAssessment | None = None
        if baseline != OUTCOME_BLOCKED:
            window = self.history.find_recent(
                record.token,
                since_utc=format_utc(now_dt - timedelta(seconds=self.policy.window_seconds)),
                until_utc=now_utc,
                limit=self.policy.history_fetch_limit,
            )
            assessment = assess_window(
                window,
                current_address=address,
                current_location=location,
                baseline_outcome=baseline,
                policy=self.policy,
            )

        # Expired and not-yet-activated tokens are frozen; escalation only
        # applies to tokens that are in circulation.
        escalate = (
            assessment is not None
            and assessment.anomalous
            and baseline in (OUTCOME_VALID, OUTCOME_ALREADY_USED)
        )
        if escalate:
            effect = "ESCALATE"
        elif baseline == OUTCOME_VALID:
            effect = "CONSUME"
        elif baseline == OUTCOME_ALREADY_USED:
            effect = "REPEAT_REVEAL"
        else:
            effect = "NONE"

        outcome = OUTCOME_BLOCKED if escalate else baseline
        if escalate:
            message = MESSAGE_BLOCKED
        reasons = assessment.reasons if assessment is not None else ()
        update, snapshot = apply_command(record, EvaluateCommand(effect=effect, at_utc=now_utc))
        if not update.is_empty:
            applied = self.records.apply_partial_update(record.product_id, update, updated_at_utc=now_utc)
            if not applied:
                self.metrics.record_guard_rejection(product_id=record.product_id)
                current = self.records.find_by_id(record.product_id)
                if current is None or current.token != record.token:
                    # Rotated or deleted since the read; the presented token is no longer live.
                    logger.warning(
                        "evaluation write rejected, token no longer live product_id=%s token_fp=%s",
                        record.product_id,
                        token_fingerprint(record.token),
                    )
                    decision = Decision(
                        outcome=OUTCOME_INVALID,
                        expired=False,
                        flagged=False,
                        record=None,
                        scanned_at_utc=now_utc,
                        message=MESSAGE_UNKNOWN,
                    )
                    self.metrics.record_decision(decision, escalated=False)
                    return decision
                logger.warning(
                    "evaluation write rejected by state guard product_id=%s effect=%s stored_state=%s",
                    record.product_id,
                    effect,
                    current.lifecycle_state,
                )
                escalate = False
                expired = current.is_expired(now_dt)
                outcome, message = _baseline_outcome(current, expired=expired)
                snapshot = current
                reasons = reasons + (REASON_CONCURRENT_UPDATE,)

        self._append_history(
            ScanHistoryEntry(
                token=record.token,
                outcome=outcome,
                source_address=address,
                location=location,
                scanned_at_utc=now_utc,
                product_id=record.product_id,
                vendor_id=record.vendor_id,
                user_agent=_clamp(user_agent, _USER_AGENT_MAX),
            )
        )

        decision = Decision(
            outcome=outcome,
            expired=expired,
            flagged=snapshot.is_flagged,
            record=snapshot,
            scanned_at_utc=now_utc,
            location=location,
            message=message,
            reasons=reasons,
        )
        self.metrics.record_decision(decision, escalated=escalate)
        if escalate:
            logger.warning(
                "token escalated to BLOCKED product_id=%s reasons=%s window=%s",
                record.product_id,
                ",".join(reasons),
                assessment.as_dict() if assessment else {},
            )
        else:
            logger.info(
                "presentation classified product_id=%s outcome=%s source=%s",
                record.product_id,
                outcome,
                address,
            )
        return decision

    def _append_history(self, entry: ScanHistoryEntry) -> None:
        try:
            self.history.append(entry)
        except VerificationError as exc:
            self.metrics.record_history_failure(product_id=entry.product_id or "", reason_code=reason_code(exc))


def _baseline_outcome(record: TokenRecord, *, expired: bool) -> tuple[str, str | None]:
    if record.lifecycle_state == "BLOCKED":
        return OUTCOME_BLOCKED, MESSAGE_BLOCKED
    if expired:
        return OUTCOME_EXPIRED, MESSAGE_EXPIRED
    if record.lifecycle_state == "ACTIVE":
        return OUTCOME_VALID, None
    if record.lifecycle_state == "CONSUMED":
        return OUTCOME_ALREADY_USED, None
    return OUTCOME_INVALID, MESSAGE_NOT_ACTIVATED


def _clamp(value: Any, max_len: int) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()[:max_len]
    return text or None
