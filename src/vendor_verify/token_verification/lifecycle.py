"""Token lifecycle state machine (Phase 3).

Stored states are GENERATED, ACTIVE, CONSUMED and BLOCKED. Expiry is a
read-time overlay and never appears here.

Each mutation arrives as one of three command variants:

* ``EvaluateCommand`` carries the side effect of a presentation. It can only
  consume, re-reveal or escalate; it has no way to express "unblock" or
  "clear flag", and its writes are guarded on the stored state and on the
  token that was read, so a concurrently blocked or rotated record is never
  touched.
* ``AdminSetStateCommand`` is an explicit operator override of the state
  and/or the sticky flag.
* ``RotateTokenCommand`` installs a fresh token and resets counters.
"""

from __future__ import annotations

from .contracts import (
    AdminSetStateCommand,
    EvaluateCommand,
    RecordCommand,
    RecordUpdate,
    RotateTokenCommand,
    TokenRecord,
    with_fields,
)

EVALUATION_TRANSITIONS: dict[str, dict[str, str]] = {
    "CONSUME": {"ACTIVE": "CONSUMED"},
    "REPEAT_REVEAL": {"CONSUMED": "CONSUMED"},
    "ESCALATE": {"ACTIVE": "BLOCKED", "CONSUMED": "BLOCKED"},
}
_REVEAL_GUARD: tuple[str, ...] = ("ACTIVE", "CONSUMED")


class LifecycleError(ValueError):
    """Raised when a command is not legal from the record's stored state."""


def apply_command(record: TokenRecord, command: RecordCommand) -> tuple[RecordUpdate, TokenRecord]:
    """Return the partial update for `command` and the record as it reads afterwards."""
    if isinstance(command, EvaluateCommand):
        return _apply_evaluation(record, command)
    if isinstance(command, AdminSetStateCommand):
        return _apply_admin(record, command)
    if isinstance(command, RotateTokenCommand):
        return _apply_rotation(record, command)
    raise LifecycleError(f"unsupported command type: {type(command).__name__}")


def admin_transition_kind(from_state: str, to_state: str) -> str:
    if from_state == to_state:
        return "noop"
    if to_state == "BLOCKED":
        return "block"
    if from_state == "BLOCKED" and to_state == "ACTIVE":
        return "unblock"
    if from_state == "GENERATED" and to_state == "ACTIVE":
        return "activate"
    return "override"


def _apply_evaluation(record: TokenRecord, command: EvaluateCommand) -> tuple[RecordUpdate, TokenRecord]:
    if command.effect == "NONE":
        return RecordUpdate(), record

    allowed = EVALUATION_TRANSITIONS[command.effect]
    next_state = allowed.get(record.lifecycle_state)
    if next_state is None:
        raise LifecycleError(
            f"evaluation effect {command.effect} not allowed from {record.lifecycle_state}"
        )

    if command.effect == "ESCALATE":
        update = RecordUpdate(
            set_fields={"is_flagged": True, "lifecycle_state": "BLOCKED"},
            guard_states=_REVEAL_GUARD,
            guard_token=record.token,
        )
        return update, with_fields(record, is_flagged=True, lifecycle_state="BLOCKED")

    set_fields: dict[str, object] = {"last_verified_at_utc": command.at_utc}
    if next_state != record.lifecycle_state:
        set_fields["lifecycle_state"] = next_state
    update = RecordUpdate(
        set_fields=set_fields,
        increments={"verification_count": 1},
        guard_states=_REVEAL_GUARD,
        guard_token=record.token,
    )
    snapshot = with_fields(
        record,
        lifecycle_state=next_state,
        verification_count=record.verification_count + 1,
        last_verified_at_utc=command.at_utc,
    )
    return update, snapshot


def _apply_admin(record: TokenRecord, command: AdminSetStateCommand) -> tuple[RecordUpdate, TokenRecord]:
    set_fields: dict[str, object] = {}
    snapshot = record
    if command.target_state is not None:
        set_fields["lifecycle_state"] = command.target_state
        snapshot = with_fields(snapshot, lifecycle_state=command.target_state)
    if command.is_flagged is not None:
        set_fields["is_flagged"] = command.is_flagged
        snapshot = with_fields(snapshot, is_flagged=command.is_flagged)
    return RecordUpdate(set_fields=set_fields), snapshot


def _apply_rotation(record: TokenRecord, command: RotateTokenCommand) -> tuple[RecordUpdate, TokenRecord]:
    set_fields: dict[str, object] = {
        "token": command.token,
        "artifact_ref": command.artifact_ref,
        "lifecycle_state": "ACTIVE",
        "is_flagged": False,
        "verification_count": 0,
        "last_verified_at_utc": None,
    }
    snapshot = with_fields(
        record,
        token=command.token,
        artifact_ref=command.artifact_ref,
        lifecycle_state="ACTIVE",
        is_flagged=False,
        verification_count=0,
        last_verified_at_utc=None,
    )
    return RecordUpdate(set_fields=set_fields), snapshot
