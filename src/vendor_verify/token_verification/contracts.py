"""Token verification contract helpers (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import hashlib
import json
from typing import Any, Union

LIFECYCLE_STATES: tuple[str, ...] = ("GENERATED", "ACTIVE", "CONSUMED", "BLOCKED")
SCAN_OUTCOMES: tuple[str, ...] = ("Valid", "AlreadyUsed", "Expired", "Blocked", "Invalid")

OUTCOME_VALID = "Valid"
OUTCOME_ALREADY_USED = "AlreadyUsed"
OUTCOME_EXPIRED = "Expired"
OUTCOME_BLOCKED = "Blocked"
OUTCOME_INVALID = "Invalid"

EVALUATION_EFFECTS: tuple[str, ...] = ("CONSUME", "REPEAT_REVEAL", "ESCALATE", "NONE")
RECORD_UPDATE_FIELDS: tuple[str, ...] = (
    "token",
    "artifact_ref",
    "lifecycle_state",
    "verification_count",
    "last_verified_at_utc",
    "is_flagged",
)

_UTC_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class TokenContractError(ValueError):
    """Raised when token record or scan payloads violate the contract."""


@dataclass(frozen=True)
class TokenRecord:
    product_id: str
    token: str
    lifecycle_state: str
    verification_count: int
    last_verified_at_utc: str | None
    is_flagged: bool
    expires_at_utc: str
    artifact_ref: str | None = None
    vendor_id: str | None = None
    created_at_utc: str | None = None
    updated_at_utc: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenRecord":
        if not isinstance(payload, dict):
            raise TokenContractError("token record payload must be a mapping")
        required = ["product_id", "token", "lifecycle_state", "expires_at_utc"]
        missing = [key for key in required if payload.get(key) in (None, "")]
        if missing:
            raise TokenContractError(f"token record missing fields: {','.join(missing)}")

        state = ensure_lifecycle_state(payload.get("lifecycle_state"))
        count = payload.get("verification_count", 0)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise TokenContractError("verification_count must be a non-negative integer")
        last_verified = _optional_utc(payload.get("last_verified_at_utc"), "last_verified_at_utc")
        if (count == 0) != (last_verified is None):
            raise TokenContractError("verification_count and last_verified_at_utc must advance together")
        flagged = payload.get("is_flagged", False)
        if not isinstance(flagged, bool):
            raise TokenContractError("is_flagged must be boolean")

        return cls(
            product_id=str(payload["product_id"]).strip(),
            token=str(payload["token"]).strip(),
            lifecycle_state=state,
            verification_count=count,
            last_verified_at_utc=last_verified,
            is_flagged=flagged,
            expires_at_utc=format_utc(parse_utc(payload["expires_at_utc"], field_name="expires_at_utc")),
            artifact_ref=_optional_text(payload.get("artifact_ref")),
            vendor_id=_optional_text(payload.get("vendor_id")),
            created_at_utc=_optional_utc(payload.get("created_at_utc"), "created_at_utc"),
            updated_at_utc=_optional_utc(payload.get("updated_at_utc"), "updated_at_utc"),
        )

    def is_expired(self, at: datetime) -> bool:
        return at > parse_utc(self.expires_at_utc, field_name="expires_at_utc")

    def as_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "token": self.token,
            "lifecycle_state": self.lifecycle_state,
            "verification_count": self.verification_count,
            "last_verified_at_utc": self.last_verified_at_utc,
            "is_flagged": self.is_flagged,
            "expires_at_utc": self.expires_at_utc,
            "artifact_ref": self.artifact_ref,
            "vendor_id": self.vendor_id,
            "created_at_utc": self.created_at_utc,
            "updated_at_utc": self.updated_at_utc,
        }


@dataclass(frozen=True)
class ScanHistoryEntry:
    token: str
    outcome: str
    source_address: str
    location: str
    scanned_at_utc: str
    product_id: str | None = None
    vendor_id: str | None = None
    user_agent: str | None = None

    def __post_init__(self) -> None:
        if not str(self.token or "").strip():
            raise TokenContractError("scan history entry requires token")
        if self.outcome not in SCAN_OUTCOMES:
            raise TokenContractError(f"outcome must be one of {SCAN_OUTCOMES}: {self.outcome!r}")

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "token": self.token,
            "outcome": self.outcome,
            "source_address": self.source_address,
            "location": self.location,
            "scanned_at_utc": self.scanned_at_utc,
        }
        if self.product_id:
            payload["product_id"] = self.product_id
        if self.vendor_id:
            payload["vendor_id"] = self.vendor_id
        if self.user_agent:
            payload["user_agent"] = self.user_agent
        return payload


@dataclass(frozen=True)
class Decision:
    outcome: str
    expired: bool
    flagged: bool
    record: TokenRecord | None
    scanned_at_utc: str
    location: str | None = None
    message: str | None = None
    reasons: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "outcome": self.outcome,
            "expired": self.expired,
            "flagged": self.flagged,
            "record": None if self.record is None else self.record.as_dict(),
            "scanned_at_utc": self.scanned_at_utc,
        }
        if self.location:
            payload["location"] = self.location
        if self.message:
            payload["message"] = self.message
        if self.reasons:
            payload["reasons"] = list(self.reasons)
        return payload

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


@dataclass(frozen=True)
class RecordUpdate:
    """Field-level write applied to one token record."""

    set_fields: dict[str, Any] = field(default_factory=dict)
    increments: dict[str, int] = field(default_factory=dict)
    guard_states: tuple[str, ...] = ()
    guard_token: str | None = None

    def __post_init__(self) -> None:
        unknown = sorted((set(self.set_fields) | set(self.increments)) - set(RECORD_UPDATE_FIELDS))
        if unknown:
            raise TokenContractError(f"record update has unknown fields: {','.join(unknown)}")
        overlap = sorted(set(self.set_fields) & set(self.increments))
        if overlap:
            raise TokenContractError(f"record update sets and increments: {','.join(overlap)}")
        for state in self.guard_states:
            ensure_lifecycle_state(state)
        if self.guard_token is not None and not str(self.guard_token).strip():
            raise TokenContractError("guard_token must be non-empty when set")

    @property
    def is_empty(self) -> bool:
        return not self.set_fields and not self.increments


@dataclass(frozen=True)
class EvaluateCommand:
    effect: str
    at_utc: str

    def __post_init__(self) -> None:
        if self.effect not in EVALUATION_EFFECTS:
            raise TokenContractError(f"effect must be one of {EVALUATION_EFFECTS}: {self.effect!r}")


@dataclass(frozen=True)
class AdminSetStateCommand:
    target_state: str | None
    is_flagged: bool | None = None
    actor: str = "ADMIN"

    def __post_init__(self) -> None:
        if self.target_state is None and self.is_flagged is None:
            raise TokenContractError("admin command must set a state or a flag")
        if self.target_state is not None:
            ensure_lifecycle_state(self.target_state)


@dataclass(frozen=True)
class RotateTokenCommand:
    token: str
    artifact_ref: str | None

    def __post_init__(self) -> None:
        if not str(self.token or "").strip():
            raise TokenContractError("rotate command requires a token")


RecordCommand = Union[EvaluateCommand, AdminSetStateCommand, RotateTokenCommand]


def ensure_lifecycle_state(value: Any) -> str:
    state = str(value or "").strip().upper()
    if state not in LIFECYCLE_STATES:
        raise TokenContractError(f"lifecycle_state must be one of {LIFECYCLE_STATES}: {value!r}")
    return state


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(str(token).encode("utf-8")).hexdigest()[:16]


def parse_utc(value: Any, *, field_name: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise TokenContractError(f"{field_name} must include timezone information")
        return value.astimezone(timezone.utc)
    token = "" if value in (None, "") else str(value).strip()
    if not token:
        raise TokenContractError(f"{field_name} must be non-empty")
    try:
        dt = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError as exc:
        raise TokenContractError(f"{field_name} must be RFC3339-ish UTC timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        raise TokenContractError(f"{field_name} must include timezone information")
    return dt.astimezone(timezone.utc)


def format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_UTC_FORMAT)


def utc_now() -> str:
    return format_utc(datetime.now(tz=timezone.utc))


def with_fields(record: TokenRecord, **changes: Any) -> TokenRecord:
    return replace(record, **changes)


def _optional_utc(value: Any, field_name: str) -> str | None:
    if value in (None, ""):
        return None
    return format_utc(parse_utc(value, field_name=field_name))


def _optional_text(value: Any) -> str | None:
    text = "" if value is None else str(value).strip()
    return text or None
