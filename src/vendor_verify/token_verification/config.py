"""Verification policy and wiring profile loaders (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import os
from pathlib import Path
import re
from typing import Any

import yaml


INITIAL_STATES: tuple[str, ...] = ("GENERATED", "ACTIVE")
GEOLOCATION_MODES: tuple[str, ...] = ("static", "http")

_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")


class VerificationConfigError(ValueError):
    """Raised when verification policy or wiring configuration is invalid."""


@dataclass(frozen=True)
class VerificationPolicy:
    version: str
    policy_id: str
    revision: str
    window_seconds: int
    burst_threshold: int
    max_unique_sources: int
    max_unique_locations: int
    post_use_burst_threshold: int
    history_fetch_limit: int
    initial_state: str
    token_bytes: int
    rotation_max_attempts: int
    default_validity_days: int
    sentinel_source_address: str
    remap_loopback: bool
    content_digest: str

    def thresholds(self) -> dict[str, Any]:
        return {
            "window_seconds": self.window_seconds,
            "burst_threshold": self.burst_threshold,
            "max_unique_sources": self.max_unique_sources,
            "max_unique_locations": self.max_unique_locations,
            "post_use_burst_threshold": self.post_use_burst_threshold,
            "history_fetch_limit": self.history_fetch_limit,
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "policy_id": self.policy_id,
            "revision": self.revision,
            "verification": {
                **self.thresholds(),
                "initial_state": self.initial_state,
                "token_bytes": self.token_bytes,
                "rotation_max_attempts": self.rotation_max_attempts,
                "default_validity_days": self.default_validity_days,
                "sentinel_source_address": self.sentinel_source_address,
                "remap_loopback": self.remap_loopback,
            },
        }


@dataclass(frozen=True)
class GeolocationWiring:
    mode: str
    static_table: dict[str, str]
    http_endpoint: str | None
    http_timeout_seconds: float


@dataclass(frozen=True)
class VerificationWiring:
    profile_id: str
    policy_ref: Path
    record_store_dsn: str
    history_store_dsn: str
    report_store_dsn: str
    geolocation: GeolocationWiring
    artifact_dir: Path
    artifact_base_url: str
    metrics_path: Path | None


def load_verification_policy(path: Path) -> VerificationPolicy:
    payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise VerificationConfigError("verification policy must be a mapping")

    version = str(payload.get("version") or "").strip()
    policy_id = str(payload.get("policy_id") or "").strip()
    revision = str(payload.get("revision") or "").strip()
    if not version or not policy_id or not revision:
        raise VerificationConfigError("verification policy requires version, policy_id, revision")

    section = payload.get("verification")
    if not isinstance(section, dict):
        raise VerificationConfigError("verification must be a mapping")

    window_seconds = _positive_int(section, "window_seconds")
    burst_threshold = _positive_int(section, "burst_threshold")
    max_unique_sources = _positive_int(section, "max_unique_sources")
    max_unique_locations = _positive_int(section, "max_unique_locations")
    post_use_burst_threshold = _positive_int(section, "post_use_burst_threshold")
    if post_use_burst_threshold > burst_threshold:
        raise VerificationConfigError("post_use_burst_threshold must not exceed burst_threshold")
    history_fetch_limit = _positive_int(section, "history_fetch_limit")
    if history_fetch_limit <= burst_threshold:
        raise VerificationConfigError("history_fetch_limit must exceed burst_threshold")

    initial_state = str(section.get("initial_state") or "").strip().upper()
    if initial_state not in INITIAL_STATES:
        raise VerificationConfigError(f"initial_state must be one of {INITIAL_STATES}: {initial_state!r}")

    token_bytes = _positive_int(section, "token_bytes")
    if token_bytes < 16:
        raise VerificationConfigError("token_bytes must be >= 16")
    rotation_max_attempts = _positive_int(section, "rotation_max_attempts")
    default_validity_days = _positive_int(section, "default_validity_days")

    sentinel = str(section.get("sentinel_source_address") or "").strip()
    if not sentinel:
        raise VerificationConfigError("sentinel_source_address is required")
    remap_loopback = section.get("remap_loopback", True)
    if not isinstance(remap_loopback, bool):
        raise VerificationConfigError("remap_loopback must be boolean")

    digest_payload = {
        "version": version,
        "policy_id": policy_id,
        "revision": revision,
        "verification": {
            "window_seconds": window_seconds,
            "burst_threshold": burst_threshold,
            "max_unique_sources": max_unique_sources,
            "max_unique_locations": max_unique_locations,
            "post_use_burst_threshold": post_use_burst_threshold,
            "history_fetch_limit": history_fetch_limit,
            "initial_state": initial_state,
            "token_bytes": token_bytes,
            "rotation_max_attempts": rotation_max_attempts,
            "default_validity_days": default_validity_days,
            "sentinel_source_address": sentinel,
            "remap_loopback": remap_loopback,
        },
    }
    canonical = json.dumps(digest_payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    content_digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    return VerificationPolicy(
        version=version,
        policy_id=policy_id,
        revision=revision,
        window_seconds=window_seconds,
        burst_threshold=burst_threshold,
        max_unique_sources=max_unique_sources,
        max_unique_locations=max_unique_locations,
        post_use_burst_threshold=post_use_burst_threshold,
        history_fetch_limit=history_fetch_limit,
        initial_state=initial_state,
        token_bytes=token_bytes,
        rotation_max_attempts=rotation_max_attempts,
        default_validity_days=default_validity_days,
        sentinel_source_address=sentinel,
        remap_loopback=remap_loopback,
        content_digest=content_digest,
    )


def load_wiring_profile(path: Path) -> VerificationWiring:
    payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise VerificationConfigError("wiring profile must be a mapping")
    profile_id = str(payload.get("profile_id") or "").strip()
    if not profile_id:
        raise VerificationConfigError("profile_id is required")

    wiring = payload.get("wiring")
    if not isinstance(wiring, dict):
        raise VerificationConfigError("wiring must be a mapping")

    policy_ref = _required_text(wiring, "policy_ref")
    stores = wiring.get("stores")
    if not isinstance(stores, dict):
        raise VerificationConfigError("wiring.stores must be a mapping")
    record_dsn = _required_text(stores, "record_store_dsn")
    history_dsn = _resolve_env_token(stores.get("history_store_dsn")) or record_dsn
    report_dsn = _resolve_env_token(stores.get("report_store_dsn")) or record_dsn

    geolocation = _parse_geolocation(wiring.get("geolocation"))

    artifacts = wiring.get("artifacts") or {}
    if not isinstance(artifacts, dict):
        raise VerificationConfigError("wiring.artifacts must be a mapping")
    artifact_dir = _required_text(artifacts, "dir")
    artifact_base_url = str(_resolve_env_token(artifacts.get("base_url")) or "").strip() or "file://" + artifact_dir

    metrics_path = str(_resolve_env_token(wiring.get("metrics_path")) or "").strip()

    return VerificationWiring(
        profile_id=profile_id,
        policy_ref=Path(policy_ref),
        record_store_dsn=record_dsn,
        history_store_dsn=str(history_dsn).strip(),
        report_store_dsn=str(report_dsn).strip(),
        geolocation=geolocation,
        artifact_dir=Path(artifact_dir),
        artifact_base_url=artifact_base_url.rstrip("/"),
        metrics_path=Path(metrics_path) if metrics_path else None,
    )


def _parse_geolocation(value: Any) -> GeolocationWiring:
    if value is None:
        return GeolocationWiring(mode="static", static_table={}, http_endpoint=None, http_timeout_seconds=2.0)
    if not isinstance(value, dict):
        raise VerificationConfigError("wiring.geolocation must be a mapping")
    mode = str(_resolve_env_token(value.get("mode")) or "static").strip().lower()
    if mode not in GEOLOCATION_MODES:
        raise VerificationConfigError(f"geolocation mode must be one of {GEOLOCATION_MODES}: {mode!r}")
    table_payload = value.get("static_table") or {}
    if not isinstance(table_payload, dict):
        raise VerificationConfigError("geolocation.static_table must be a mapping of CIDR to label")
    table = {str(key).strip(): str(label).strip() for key, label in table_payload.items()}
    endpoint = str(_resolve_env_token(value.get("http_endpoint")) or "").strip() or None
    if mode == "http" and not endpoint:
        raise VerificationConfigError("geolocation mode 'http' requires http_endpoint")
    try:
        timeout = float(_resolve_env_token(value.get("http_timeout_seconds")) or 2.0)
    except (TypeError, ValueError) as exc:
        raise VerificationConfigError("geolocation.http_timeout_seconds must be numeric") from exc
    if timeout <= 0:
        raise VerificationConfigError("geolocation.http_timeout_seconds must be > 0")
    return GeolocationWiring(mode=mode, static_table=table, http_endpoint=endpoint, http_timeout_seconds=timeout)


def _positive_int(section: dict[str, Any], key: str) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise VerificationConfigError(f"verification.{key} must be a positive integer")
    return value


def _required_text(section: dict[str, Any], key: str) -> str:
    value = str(_resolve_env_token(section.get(key)) or "").strip()
    if not value:
        raise VerificationConfigError(f"{key} is required")
    return value


def _resolve_env_token(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    key = match.group(1)
    default = match.group(2) or ""
    return os.getenv(key, default)
