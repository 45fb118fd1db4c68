from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vendor_verify.token_verification.config import load_verification_policy
from vendor_verify.token_verification.contracts import RotateTokenCommand, ScanHistoryEntry, TokenRecord, format_utc
from vendor_verify.token_verification.errors import StoreUnavailableError, VerificationInputError
from vendor_verify.token_verification.evaluator import VerificationEngine
from vendor_verify.token_verification.geolocation import (
    FailOpenGeolocationResolver,
    GeolocationError,
    GeolocationResolver,
    StaticGeolocationResolver,
)
from vendor_verify.token_verification.lifecycle import apply_command
from vendor_verify.token_verification.observability import VerificationMetrics
from vendor_verify.token_verification.store import ScanHistoryStore, TokenRecordStore

T0 = datetime(2026, 2, 1, 10, 0, 0, tzinfo=timezone.utc)
IP_A = "41.90.10.1"
IP_B = "41.90.20.1"
IP_C = "41.90.30.1"


class _FailingHistoryStore(ScanHistoryStore):
    def append(self, entry: ScanHistoryEntry) -> None:
        raise StoreUnavailableError("HISTORY_APPEND_FAILED", "disk full")


class _StaleRecordStore(TokenRecordStore):
    """Serves the record as it looked before a concurrent block landed."""

    def __init__(self, *, locator: str, stale: TokenRecord) -> None:
        super().__init__(locator=locator)
        self.stale = stale

    def find_by_token(self, token: str) -> TokenRecord | None:
        return self.stale if token == self.stale.token else None


class _RotatedAfterReadStore(TokenRecordStore):
    """Lets an admin rotation land between the token lookup and the write."""

    def __init__(self, *, locator: str, new_token: str) -> None:
        super().__init__(locator=locator)
        self.new_token = new_token

    def find_by_token(self, token: str) -> TokenRecord | None:
        record = super().find_by_token(token)
        if record is not None and record.token != self.new_token:
            update, _ = apply_command(record, RotateTokenCommand(token=self.new_token, artifact_ref=None))
            self.apply_partial_update(record.product_id, update)
        return record


class _UnavailableRecordStore(TokenRecordStore):
    def find_by_token(self, token: str) -> TokenRecord | None:
        raise StoreUnavailableError("RECORD_STORE_READ_FAILED", "connection reset")


class _BrokenResolver(GeolocationResolver):
    def resolve(self, source_address: str) -> str:
        raise GeolocationError("GEO_LOOKUP_FAILED:timeout")


def _policy():
    return load_verification_policy(Path("config/verification/verification_policy_v0.yaml"))


def _record(
    *,
    token: str = "T1",
    state: str = "ACTIVE",
    expires_at: datetime | None = None,
    product_id: str = "prod-t1",
) -> TokenRecord:
    return TokenRecord(
        product_id=product_id,
        token=token,
        lifecycle_state=state,
        verification_count=0,
        last_verified_at_utc=None,
        is_flagged=False,
        expires_at_utc=format_utc(expires_at or T0 + timedelta(days=30)),
        vendor_id="vendor-1",
    )


def _resolver() -> GeolocationResolver:
    return FailOpenGeolocationResolver(
        inner=StaticGeolocationResolver(
            table={
                "41.90.10.0/24": "Nairobi, Nairobi County, Kenya",
                "41.90.20.0/24": "Mombasa, Mombasa County, Kenya",
                "41.90.30.0/24": "Kisumu, Kisumu County, Kenya",
            }
        )
    )


def _engine(
    tmp_path: Path,
    *,
    records: TokenRecordStore | None = None,
    history: ScanHistoryStore | None = None,
    geolocation: GeolocationResolver | None = None,
) -> VerificationEngine:
    locator = str(tmp_path / "vv.sqlite")
    return VerificationEngine(
        policy=_policy(),
        records=records or TokenRecordStore(locator=locator),
        history=history or ScanHistoryStore(locator=locator),
        geolocation=geolocation or _resolver(),
        metrics=VerificationMetrics(),
    )


def _at(seconds: float) -> str:
    return format_utc(T0 + timedelta(seconds=seconds))


def test_concrete_t1_scenario_valid_then_already_used_then_blocked(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())

    first = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert first.outcome == "Valid"
    assert first.record is not None and first.record.verification_count == 1
    assert first.record.lifecycle_state == "CONSUMED"

    second = engine.evaluate_presentation("T1", IP_A, _at(2))
    assert second.outcome == "AlreadyUsed"
    assert second.record is not None and second.record.verification_count == 2

    third = engine.evaluate_presentation("T1", IP_B, _at(3))
    assert third.outcome == "AlreadyUsed"
    assert third.flagged is False
    assert third.record is not None and third.record.verification_count == 3

    fourth = engine.evaluate_presentation("T1", IP_C, _at(4))
    assert fourth.outcome == "Blocked"
    assert fourth.flagged is True
    assert "SOURCE_DIVERSITY" in fourth.reasons

    stored = engine.records.find_by_token("T1")
    assert stored is not None
    assert stored.lifecycle_state == "BLOCKED"
    assert stored.is_flagged is True
    assert stored.verification_count == 3


def test_sixth_presentation_in_window_is_blocked_by_burst(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    for offset in range(5):
        engine.history.append(
            ScanHistoryEntry(
                token="T1",
                outcome="Valid",
                source_address=IP_A,
                location="Nairobi, Nairobi County, Kenya",
                scanned_at_utc=_at(offset * 10),
                product_id="prod-t1",
            )
        )

    decision = engine.evaluate_presentation("T1", IP_A, _at(60))
    assert decision.outcome == "Blocked"
    assert decision.flagged is True
    assert decision.reasons == ("BURST",)
    assert engine.metrics.counters["anomaly_escalations"] == 1


def test_repeated_same_source_presentations_end_blocked(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    outcomes = [engine.evaluate_presentation("T1", IP_A, _at(i)).outcome for i in range(6)]
    assert outcomes[0] == "Valid"
    assert outcomes[-1] == "Blocked"
    stored = engine.records.find_by_token("T1")
    assert stored is not None and stored.is_flagged is True


def test_entries_outside_window_are_ignored(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    for offset, source in enumerate((IP_B, IP_C, "41.90.40.1")):
        engine.history.append(
            ScanHistoryEntry(
                token="T1",
                outcome="Valid",
                source_address=source,
                location="Unknown",
                scanned_at_utc=_at(-600 + offset),
            )
        )
    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Valid"
    assert decision.reasons == ()


def test_expired_token_is_frozen_and_never_escalated(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record(expires_at=T0 - timedelta(days=1)))
    for offset, source in enumerate((IP_A, IP_B, IP_C)):
        decision = engine.evaluate_presentation("T1", source, _at(offset))
        assert decision.outcome == "Expired"
        assert decision.expired is True

    assert "SOURCE_DIVERSITY" in decision.reasons
    stored = engine.records.find_by_token("T1")
    assert stored is not None
    assert stored.lifecycle_state == "ACTIVE"
    assert stored.verification_count == 0
    assert stored.is_flagged is False
    assert [entry.outcome for entry in engine.history.list_for_token("T1")] == ["Expired"] * 3


def test_expiry_boundary_is_inclusive_of_expires_at(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record(expires_at=T0))
    assert engine.evaluate_presentation("T1", IP_A, _at(0)).outcome == "Valid"


def test_blocked_token_stays_blocked_without_counting(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record(state="BLOCKED"))
    for offset in range(3):
        decision = engine.evaluate_presentation("T1", IP_A, _at(offset))
        assert decision.outcome == "Blocked"
        assert decision.reasons == ()
    stored = engine.records.find_by_token("T1")
    assert stored is not None
    assert stored.verification_count == 0
    assert len(engine.history.list_for_token("T1")) == 3


def test_blocked_takes_priority_over_expired(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record(state="BLOCKED", expires_at=T0 - timedelta(days=1)))
    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Blocked"
    assert decision.expired is True


def test_generated_token_is_invalid_until_activated(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record(state="GENERATED"))
    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.message == "product not yet activated by vendor"
    assert engine.history.list_for_token("T1")[0].outcome == "Invalid"
    stored = engine.records.find_by_token("T1")
    assert stored is not None and stored.lifecycle_state == "GENERATED"


def test_unknown_token_is_invalid_and_leaves_no_history(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    decision = engine.evaluate_presentation("nope", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.record is None
    assert engine.history.list_for_token("nope") == []
    assert engine.metrics.counters["unknown_tokens"] == 1
    event = engine.metrics.recent_events[-1]
    assert "nope" not in str(event)


def test_blank_token_is_invalid(tmp_path: Path) -> None:
    decision = _engine(tmp_path).evaluate_presentation("   ", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.message == "token is required"


def test_history_append_failure_does_not_fail_presentation(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    engine = _engine(tmp_path, history=_FailingHistoryStore(locator=locator))
    engine.records.insert(_record())
    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Valid"
    assert engine.metrics.counters["history_append_failures"] == 1
    stored = engine.records.find_by_token("T1")
    assert stored is not None and stored.lifecycle_state == "CONSUMED"


def test_concurrent_block_wins_over_stale_read(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    stale = _record()
    records = _StaleRecordStore(locator=locator, stale=stale)
    records.insert(_record(state="BLOCKED"))
    engine = _engine(tmp_path, records=records)

    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Blocked"
    assert "CONCURRENT_UPDATE" in decision.reasons
    assert engine.metrics.counters["guard_rejections"] == 1
    stored = records.find_by_id("prod-t1")
    assert stored is not None
    assert stored.lifecycle_state == "BLOCKED"
    assert stored.verification_count == 0


def test_concurrent_deactivation_reports_stored_state(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    records = _StaleRecordStore(locator=locator, stale=_record())
    records.insert(_record(state="GENERATED"))
    engine = _engine(tmp_path, records=records)

    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.message == "product not yet activated by vendor"
    assert "CONCURRENT_UPDATE" in decision.reasons
    assert decision.record is not None and decision.record.lifecycle_state == "GENERATED"
    stored = records.find_by_id("prod-t1")
    assert stored is not None
    assert stored.lifecycle_state == "GENERATED"
    assert stored.verification_count == 0
    assert [entry.outcome for entry in engine.history.list_for_token("T1")] == ["Invalid"]


def test_rotation_between_read_and_write_leaves_new_token_untouched(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    records = _RotatedAfterReadStore(locator=locator, new_token="T2")
    records.insert(_record())
    engine = _engine(tmp_path, records=records)

    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.record is None
    assert engine.metrics.counters["guard_rejections"] == 1
    assert engine.history.list_for_token("T1") == []

    stored = records.find_by_id("prod-t1")
    assert stored is not None
    assert stored.token == "T2"
    assert stored.lifecycle_state == "ACTIVE"
    assert stored.verification_count == 0
    assert stored.is_flagged is False

    fresh = engine.evaluate_presentation("T2", IP_A, _at(5))
    assert fresh.outcome == "Valid"
    assert fresh.record is not None and fresh.record.verification_count == 1


def test_rotation_race_does_not_block_new_token_on_escalation(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    records = _RotatedAfterReadStore(locator=locator, new_token="T2")
    records.insert(_record())
    engine = _engine(tmp_path, records=records)
    for offset in range(5):
        engine.history.append(
            ScanHistoryEntry(
                token="T1",
                outcome="AlreadyUsed",
                source_address=IP_A,
                location="Nairobi, Nairobi County, Kenya",
                scanned_at_utc=_at(-50 + offset),
                product_id="prod-t1",
            )
        )

    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Invalid"
    assert decision.flagged is False
    stored = records.find_by_id("prod-t1")
    assert stored is not None
    assert stored.token == "T2"
    assert stored.lifecycle_state == "ACTIVE"
    assert stored.is_flagged is False


def test_malformed_scan_timestamp_is_an_input_error(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    with pytest.raises(VerificationInputError) as excinfo:
        engine.evaluate_presentation("T1", IP_A, "not-a-time")
    assert excinfo.value.code == "SCANNED_AT_INVALID"
    assert engine.history.list_for_token("T1") == []


def test_record_store_outage_propagates(tmp_path: Path) -> None:
    locator = str(tmp_path / "vv.sqlite")
    engine = _engine(tmp_path, records=_UnavailableRecordStore(locator=locator))
    with pytest.raises(StoreUnavailableError):
        engine.evaluate_presentation("T1", IP_A, _at(0))


def test_geolocation_failure_degrades_to_unknown_location(tmp_path: Path) -> None:
    engine = _engine(tmp_path, geolocation=FailOpenGeolocationResolver(inner=_BrokenResolver()))
    engine.records.insert(_record())
    decision = engine.evaluate_presentation("T1", IP_A, _at(0))
    assert decision.outcome == "Valid"
    assert decision.location == "Unknown"


def test_loopback_source_is_recorded_as_sentinel(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    engine.evaluate_presentation("T1", "127.0.0.1", _at(0), user_agent="Mozilla/5.0 " + "x" * 400)
    entry = engine.history.list_for_token("T1")[0]
    assert entry.source_address == "8.8.8.8"
    assert entry.user_agent is not None and len(entry.user_agent) == 300


def test_decision_payload_shape(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.records.insert(_record())
    payload = engine.evaluate_presentation("T1", IP_A, _at(0)).as_dict()
    assert payload["outcome"] == "Valid"
    assert payload["expired"] is False
    assert payload["flagged"] is False
    assert payload["location"] == "Nairobi, Nairobi County, Kenya"
    assert payload["record"]["verification_count"] == 1
    assert payload["scanned_at_utc"] == "2026-02-01T10:00:00.000000Z"
