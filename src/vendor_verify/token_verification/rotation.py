"""Token issuance and rotation (Phase 6)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any, Callable
import uuid

from .config import VerificationPolicy
from .contracts import RotateTokenCommand, TokenContractError, TokenRecord, format_utc, parse_utc
from .errors import TokenConflictError, TokenNotFoundError, VerificationInputError
from .lifecycle import apply_command
from .observability import VerificationMetrics
from .rendering import QrArtifactRenderer
from .store import TokenRecordStore

logger = logging.getLogger("vendor_verify.token_verification.rotation")


@dataclass(frozen=True)
class IssuedToken:
    product_id: str
    token: str
    artifact_ref: str
    record: TokenRecord

    def as_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "token": self.token,
            "artifact_ref": self.artifact_ref,
            "record": self.record.as_dict(),
        }


@dataclass
class TokenIssuer:
    policy: VerificationPolicy
    records: TokenRecordStore
    renderer: QrArtifactRenderer
    metrics: VerificationMetrics = field(default_factory=VerificationMetrics)
    token_factory: Callable[[int], str] = secrets.token_hex

    def issue(
        self,
        *,
        vendor_id: str,
        expires_at_utc: str | datetime | None = None,
        product_id: str | None = None,
    ) -> IssuedToken:
        vendor = str(vendor_id or "").strip()
        if not vendor:
            raise VerificationInputError("VENDOR_ID_REQUIRED")
        pid = str(product_id or "").strip() or uuid.uuid4().hex
        if expires_at_utc:
            try:
                expires = format_utc(parse_utc(expires_at_utc, field_name="expires_at_utc"))
            except TokenContractError as exc:
                raise VerificationInputError("EXPIRES_AT_INVALID", str(exc)) from exc
        else:
            expires = format_utc(datetime.now(tz=timezone.utc) + timedelta(days=self.policy.default_validity_days))

        last_exc: TokenConflictError | None = None
        for attempt in range(1, self.policy.rotation_max_attempts + 1):
            token = self._fresh_token()
            if token is None:
                continue
            artifact_ref = self.renderer.render(token)
            record = TokenRecord(
                product_id=pid,
                token=token,
                lifecycle_state=self.policy.initial_state,
                verification_count=0,
                last_verified_at_utc=None,
                is_flagged=False,
                expires_at_utc=expires,
                artifact_ref=artifact_ref,
                vendor_id=vendor,
            )
            try:
                stored = self.records.insert(record)
            except TokenConflictError as exc:
                if self.records.find_by_id(pid) is not None:
                    raise
                last_exc = exc
                logger.info("token collision on issue attempt=%s product_id=%s", attempt, pid)
                continue
            self.metrics.record_issue(product_id=pid)
            logger.info("token issued product_id=%s state=%s attempts=%s", pid, stored.lifecycle_state, attempt)
            return IssuedToken(product_id=pid, token=token, artifact_ref=artifact_ref, record=stored)
        raise TokenConflictError(
            "TOKEN_CONFLICT_EXHAUSTED",
            f"no unique token after {self.policy.rotation_max_attempts} attempts",
        ) from last_exc

    def rotate(self, product_id: str) -> IssuedToken:
        pid = str(product_id or "").strip()
        record = self.records.find_by_id(pid)
        if record is None:
            raise TokenNotFoundError("PRODUCT_NOT_FOUND", pid or "<blank>")

        last_exc: TokenConflictError | None = None
        for attempt in range(1, self.policy.rotation_max_attempts + 1):
            token = self._fresh_token()
            if token is None:
                continue
            artifact_ref = self.renderer.render(token)
            update, snapshot = apply_command(record, RotateTokenCommand(token=token, artifact_ref=artifact_ref))
            try:
                applied = self.records.apply_partial_update(pid, update)
            except TokenConflictError as exc:
                last_exc = exc
                logger.info("token collision on rotate attempt=%s product_id=%s", attempt, pid)
                continue
            if not applied:
                raise TokenNotFoundError("PRODUCT_NOT_FOUND", pid)
            self.metrics.record_rotation(product_id=pid, attempts=attempt)
            logger.info("token rotated product_id=%s attempts=%s", pid, attempt)
            return IssuedToken(product_id=pid, token=token, artifact_ref=artifact_ref, record=snapshot)
        raise TokenConflictError(
            "TOKEN_CONFLICT_EXHAUSTED",
            f"no unique token after {self.policy.rotation_max_attempts} attempts",
        ) from last_exc

    def _fresh_token(self) -> str | None:
        token = str(self.token_factory(self.policy.token_bytes)).strip()
        if not token or self.records.token_exists(token):
            return None
        return token
