from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path

import pytest
import yaml

from vendor_verify.token_verification.config import (
    VerificationConfigError,
    load_verification_policy,
    load_wiring_profile,
)
from vendor_verify.token_verification.contracts import (
    AdminSetStateCommand,
    Decision,
    EvaluateCommand,
    RecordUpdate,
    RotateTokenCommand,
    ScanHistoryEntry,
    TokenContractError,
    TokenRecord,
    parse_utc,
    token_fingerprint,
)

POLICY_PATH = Path("config/verification/verification_policy_v0.yaml")
PROFILE_PATH = Path("config/verification/local_profile.yaml")


def _record_payload() -> dict[str, object]:
    return {
        "product_id": "prod-001",
        "token": "a" * 64,
        "lifecycle_state": "active",
        "verification_count": 0,
        "last_verified_at_utc": None,
        "is_flagged": False,
        "expires_at_utc": "2026-03-01T00:00:00Z",
        "vendor_id": "vendor-9",
    }


def _write_policy(tmp_path: Path, **overrides: object) -> Path:
    payload = yaml.safe_load(POLICY_PATH.read_text(encoding="utf-8"))
    payload["verification"].update(overrides)
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_token_record_normalizes_state_and_timestamps() -> None:
    record = TokenRecord.from_payload(_record_payload())
    assert record.lifecycle_state == "ACTIVE"
    assert record.expires_at_utc == "2026-03-01T00:00:00.000000Z"
    assert record.artifact_ref is None
    assert record.as_dict()["vendor_id"] == "vendor-9"


def test_token_record_requires_fields() -> None:
    payload = _record_payload()
    payload.pop("token")
    with pytest.raises(TokenContractError):
        TokenRecord.from_payload(payload)


def test_token_record_rejects_unknown_state() -> None:
    payload = _record_payload()
    payload["lifecycle_state"] = "EXPIRED"
    with pytest.raises(TokenContractError):
        TokenRecord.from_payload(payload)


def test_token_record_count_and_last_verified_advance_together() -> None:
    payload = _record_payload()
    payload["verification_count"] = 2
    with pytest.raises(TokenContractError):
        TokenRecord.from_payload(payload)

    payload["last_verified_at_utc"] = "2026-02-01T10:00:00Z"
    record = TokenRecord.from_payload(payload)
    assert record.verification_count == 2


def test_token_record_expiry_is_strictly_after_expires_at() -> None:
    record = TokenRecord.from_payload(_record_payload())
    at_expiry = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert record.is_expired(at_expiry) is False
    assert record.is_expired(datetime(2026, 3, 1, 0, 0, 1, tzinfo=timezone.utc)) is True


def test_parse_utc_rejects_naive_and_garbage() -> None:
    with pytest.raises(TokenContractError):
        parse_utc("2026-02-01T10:00:00")
    with pytest.raises(TokenContractError):
        parse_utc(datetime(2026, 2, 1))
    with pytest.raises(TokenContractError):
        parse_utc("yesterday")


def test_scan_history_entry_requires_known_outcome() -> None:
    with pytest.raises(TokenContractError):
        ScanHistoryEntry(
            token="t",
            outcome="Consumed",
            source_address="8.8.8.8",
            location="Unknown",
            scanned_at_utc="2026-02-01T10:00:00.000000Z",
        )


def test_decision_canonical_json_is_stable_and_omits_empty_optionals() -> None:
    record = TokenRecord.from_payload(_record_payload())
    decision = Decision(
        outcome="Valid",
        expired=False,
        flagged=False,
        record=record,
        scanned_at_utc="2026-02-01T10:00:00.000000Z",
        location="Unknown",
    )
    payload = json.loads(decision.canonical_json())
    assert payload["outcome"] == "Valid"
    assert "reasons" not in payload
    assert "message" not in payload
    assert decision.canonical_json() == decision.canonical_json()


def test_record_update_rejects_unknown_and_overlapping_fields() -> None:
    with pytest.raises(TokenContractError):
        RecordUpdate(set_fields={"vendor_id": "x"})
    with pytest.raises(TokenContractError):
        RecordUpdate(set_fields={"verification_count": 0}, increments={"verification_count": 1})
    with pytest.raises(TokenContractError):
        RecordUpdate(set_fields={"is_flagged": True}, guard_token=" ")
    assert RecordUpdate().is_empty


def test_command_variants_validate_their_payloads() -> None:
    with pytest.raises(TokenContractError):
        EvaluateCommand(effect="UNBLOCK", at_utc="2026-02-01T10:00:00.000000Z")
    with pytest.raises(TokenContractError):
        AdminSetStateCommand(target_state=None, is_flagged=None)
    with pytest.raises(TokenContractError):
        RotateTokenCommand(token=" ", artifact_ref=None)
    assert AdminSetStateCommand(target_state=None, is_flagged=True).is_flagged is True


def test_token_fingerprint_never_echoes_token() -> None:
    token = "b" * 64
    fingerprint = token_fingerprint(token)
    assert len(fingerprint) == 16
    assert fingerprint not in token


def test_policy_loads_thresholds_and_digest() -> None:
    policy = load_verification_policy(POLICY_PATH)
    assert policy.policy_id == "token_verification.policy.v0"
    assert policy.thresholds() == {
        "window_seconds": 120,
        "burst_threshold": 5,
        "max_unique_sources": 2,
        "max_unique_locations": 2,
        "post_use_burst_threshold": 3,
        "history_fetch_limit": 50,
    }
    assert policy.initial_state == "ACTIVE"
    assert policy.as_dict()["verification"]["sentinel_source_address"] == "8.8.8.8"
    assert len(policy.content_digest) == 64
    assert load_verification_policy(POLICY_PATH).content_digest == policy.content_digest


def test_policy_digest_tracks_threshold_changes(tmp_path: Path) -> None:
    baseline = load_verification_policy(POLICY_PATH)
    changed = load_verification_policy(_write_policy(tmp_path, burst_threshold=6))
    assert changed.burst_threshold == 6
    assert changed.content_digest != baseline.content_digest


@pytest.mark.parametrize(
    "overrides",
    [
        {"window_seconds": 0},
        {"burst_threshold": "5"},
        {"post_use_burst_threshold": 9},
        {"history_fetch_limit": 5},
        {"initial_state": "CONSUMED"},
        {"token_bytes": 8},
        {"sentinel_source_address": ""},
        {"remap_loopback": "yes"},
    ],
)
def test_policy_rejects_invalid_values(tmp_path: Path, overrides: dict[str, object]) -> None:
    with pytest.raises(VerificationConfigError):
        load_verification_policy(_write_policy(tmp_path, **overrides))


def test_wiring_profile_resolves_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("VV_RECORD_STORE_DSN", raising=False)
    monkeypatch.delenv("VV_HISTORY_STORE_DSN", raising=False)
    monkeypatch.delenv("VV_GEOLOCATION_MODE", raising=False)
    monkeypatch.delenv("VV_ARTIFACT_BASE_URL", raising=False)
    wiring = load_wiring_profile(PROFILE_PATH)
    assert wiring.profile_id == "local"
    assert wiring.policy_ref == POLICY_PATH
    assert wiring.record_store_dsn == "runs/vendor_verify/verification.sqlite"
    assert wiring.history_store_dsn == wiring.record_store_dsn
    assert wiring.report_store_dsn == wiring.record_store_dsn
    assert wiring.geolocation.mode == "static"
    assert "{address}" in str(wiring.geolocation.http_endpoint)
    assert wiring.geolocation.static_table["8.8.8.0/24"].startswith("Mountain View")
    assert wiring.artifact_base_url.startswith("file://")


def test_wiring_profile_env_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VV_RECORD_STORE_DSN", str(tmp_path / "records.sqlite"))
    monkeypatch.setenv("VV_HISTORY_STORE_DSN", str(tmp_path / "history.sqlite"))
    monkeypatch.setenv("VV_GEOLOCATION_MODE", "http")
    wiring = load_wiring_profile(PROFILE_PATH)
    assert wiring.record_store_dsn.endswith("records.sqlite")
    assert wiring.history_store_dsn.endswith("history.sqlite")
    assert wiring.report_store_dsn.endswith("records.sqlite")
    assert wiring.geolocation.mode == "http"


def test_wiring_profile_rejects_unknown_geolocation_mode(tmp_path: Path) -> None:
    payload = yaml.safe_load(PROFILE_PATH.read_text(encoding="utf-8"))
    payload["wiring"]["geolocation"]["mode"] = "maxmind"
    path = tmp_path / "profile.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    with pytest.raises(VerificationConfigError):
        load_wiring_profile(path)
