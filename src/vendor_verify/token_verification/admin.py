"""Explicit lifecycle overrides for vendors and administrators (Phase 6)."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging

from .contracts import AdminSetStateCommand, TokenContractError, TokenRecord, ensure_lifecycle_state
from .errors import TokenNotFoundError, VerificationInputError
from .lifecycle import admin_transition_kind, apply_command
from .observability import VerificationMetrics
from .store import TokenRecordStore

logger = logging.getLogger("vendor_verify.token_verification.admin")


@dataclass
class TokenAdministration:
    records: TokenRecordStore
    metrics: VerificationMetrics = field(default_factory=VerificationMetrics)

    def set_lifecycle_state(
        self,
        token_or_id: str,
        target_state: str | None,
        *,
        is_flagged: bool | None = None,
        actor: str = "ADMIN",
    ) -> TokenRecord:
        """Set state and/or flag directly; anomaly scoring is not consulted."""
        record = self.resolve(token_or_id)
        try:
            state = None if target_state is None else ensure_lifecycle_state(target_state)
            command = AdminSetStateCommand(target_state=state, is_flagged=is_flagged, actor=actor)
        except TokenContractError as exc:
            raise VerificationInputError("ADMIN_COMMAND_INVALID", str(exc)) from exc

        update, snapshot = apply_command(record, command)
        if not self.records.apply_partial_update(record.product_id, update):
            raise TokenNotFoundError("PRODUCT_NOT_FOUND", record.product_id)

        kind = admin_transition_kind(record.lifecycle_state, snapshot.lifecycle_state)
        self.metrics.record_admin_override(product_id=record.product_id, kind=kind, actor=actor)
        logger.info(
            "admin override product_id=%s kind=%s state=%s->%s flagged=%s->%s actor=%s",
            record.product_id,
            kind,
            record.lifecycle_state,
            snapshot.lifecycle_state,
            record.is_flagged,
            snapshot.is_flagged,
            actor,
        )
        return snapshot

    def activate(self, token_or_id: str, *, actor: str = "ADMIN") -> TokenRecord:
        return self.set_lifecycle_state(token_or_id, "ACTIVE", actor=actor)

    def block(self, token_or_id: str, *, actor: str = "ADMIN") -> TokenRecord:
        return self.set_lifecycle_state(token_or_id, "BLOCKED", actor=actor)

    def unblock(self, token_or_id: str, *, clear_flag: bool = False, actor: str = "ADMIN") -> TokenRecord:
        return self.set_lifecycle_state(
            token_or_id,
            "ACTIVE",
            is_flagged=False if clear_flag else None,
            actor=actor,
        )

    def resolve(self, token_or_id: str) -> TokenRecord:
        key = str(token_or_id or "").strip()
        if not key:
            raise VerificationInputError("TOKEN_OR_ID_REQUIRED")
        record = self.records.find_by_id(key) or self.records.find_by_token(key)
        if record is None:
            raise TokenNotFoundError("PRODUCT_NOT_FOUND", key)
        return record
