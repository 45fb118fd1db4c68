"""Token record and scan history stores (Phase 4)."""

from __future__ import annotations

from typing import Any

from .contracts import (
    RECORD_UPDATE_FIELDS,
    RecordUpdate,
    ScanHistoryEntry,
    TokenContractError,
    TokenRecord,
    utc_now,
)
from .errors import StoreUnavailableError, TokenConflictError
from .sql import (
    STORE_ERRORS,
    backend_for,
    execute,
    execute_script,
    is_unique_violation,
    placeholders,
    query_all,
    query_one,
    transaction,
)

_RECORD_COLUMNS = (
    "product_id",
    "token",
    "lifecycle_state",
    "verification_count",
    "last_verified_at_utc",
    "is_flagged",
    "expires_at_utc",
    "artifact_ref",
    "vendor_id",
    "created_at_utc",
    "updated_at_utc",
)
_HISTORY_COLUMNS = (
    "token",
    "outcome",
    "source_address",
    "location",
    "scanned_at_utc",
    "product_id",
    "vendor_id",
    "user_agent",
)


class TokenRecordStore:
    """One row per issued token; `token` is unique across live records."""

    def __init__(self, *, locator: str) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise StoreUnavailableError("STORE_LOCATOR_MISSING", "token record store")
        self.backend = backend_for(self.locator)
        self._init_schema()

    def find_by_token(self, token: str) -> TokenRecord | None:
        normalized = str(token or "").strip()
        if not normalized:
            return None
        return self._find_one("token", normalized)

    def find_by_id(self, product_id: str) -> TokenRecord | None:
        normalized = str(product_id or "").strip()
        if not normalized:
            return None
        return self._find_one("product_id", normalized)

    def token_exists(self, token: str) -> bool:
        return self.find_by_token(token) is not None

    def insert(self, record: TokenRecord) -> TokenRecord:
        now = utc_now()
        stored = TokenRecord(
            **{
                **record.as_dict(),
                "created_at_utc": record.created_at_utc or now,
                "updated_at_utc": now,
            }
        )
        values = _record_params(stored)
        marks = ", ".join(placeholders(1, len(_RECORD_COLUMNS)))
        sql = f"INSERT INTO vv_token_record ({', '.join(_RECORD_COLUMNS)}) VALUES ({marks})"
        try:
            with transaction(self.locator, self.backend) as conn:
                execute(conn, self.backend, sql, values)
        except STORE_ERRORS as exc:
            if is_unique_violation(exc):
                raise TokenConflictError("TOKEN_CONFLICT", f"product_id or token already present: {stored.product_id}") from exc
            raise StoreUnavailableError("RECORD_STORE_WRITE_FAILED", str(exc)[:256]) from exc
        return stored

    def apply_partial_update(
        self,
        product_id: str,
        update: RecordUpdate,
        *,
        updated_at_utc: str | None = None,
    ) -> bool:
        """Apply a field-level update; False when no row matched (missing or guard rejected)."""
        if update.is_empty:
            return True
        assignments: list[str] = []
        params: list[Any] = []
        index = 1
        for column in RECORD_UPDATE_FIELDS:
            if column in update.set_fields:
                assignments.append(f"{column} = {{p{index}}}")
                params.append(_bind(update.set_fields[column]))
                index += 1
            elif column in update.increments:
                assignments.append(f"{column} = {column} + {{p{index}}}")
                params.append(int(update.increments[column]))
                index += 1
        assignments.append(f"updated_at_utc = {{p{index}}}")
        params.append(updated_at_utc or utc_now())
        index += 1
        where = f"product_id = {{p{index}}}"
        params.append(str(product_id))
        index += 1
        if update.guard_token is not None:
            where += f" AND token = {{p{index}}}"
            params.append(str(update.guard_token))
            index += 1
        if update.guard_states:
            marks = placeholders(index, len(update.guard_states))
            where += f" AND lifecycle_state IN ({', '.join(marks)})"
            params.extend(update.guard_states)
        sql = f"UPDATE vv_token_record SET {', '.join(assignments)} WHERE {where}"
        try:
            with transaction(self.locator, self.backend) as conn:
                affected = execute(conn, self.backend, sql, tuple(params))
        except STORE_ERRORS as exc:
            if is_unique_violation(exc):
                raise TokenConflictError("TOKEN_CONFLICT", "token already bound to another record") from exc
            raise StoreUnavailableError("RECORD_STORE_WRITE_FAILED", str(exc)[:256]) from exc
        return affected > 0

    def _find_one(self, column: str, value: str) -> TokenRecord | None:
        sql = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM vv_token_record WHERE {column} = {{p1}}"
        try:
            with transaction(self.locator, self.backend) as conn:
                row = query_one(conn, self.backend, sql, (value,))
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("RECORD_STORE_READ_FAILED", str(exc)[:256]) from exc
        if row is None:
            return None
        return _parse_record_row(row)

    def _init_schema(self) -> None:
        try:
            with transaction(self.locator, self.backend) as conn:
                execute_script(
                    conn,
                    self.backend,
                    """
                    CREATE TABLE IF NOT EXISTS vv_token_record (
                        product_id TEXT PRIMARY KEY,
                        token TEXT NOT NULL UNIQUE,
                        lifecycle_state TEXT NOT NULL,
                        verification_count INTEGER NOT NULL DEFAULT 0,
                        last_verified_at_utc TEXT,
                        is_flagged INTEGER NOT NULL DEFAULT 0,
                        expires_at_utc TEXT NOT NULL,
                        artifact_ref TEXT,
                        vendor_id TEXT,
                        created_at_utc TEXT NOT NULL,
                        updated_at_utc TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS ix_vv_token_record_vendor
                        ON vv_token_record (vendor_id, created_at_utc);
                    """,
                )
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("RECORD_STORE_INIT_FAILED", str(exc)[:256]) from exc


class ScanHistoryStore:
    """Append-only presentation log, indexed on (token, scanned_at_utc)."""

    def __init__(self, *, locator: str) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise StoreUnavailableError("STORE_LOCATOR_MISSING", "scan history store")
        self.backend = backend_for(self.locator)
        self._init_schema()

    def append(self, entry: ScanHistoryEntry) -> None:
        values = (
            entry.token,
            entry.outcome,
            entry.source_address,
            entry.location,
            entry.scanned_at_utc,
            entry.product_id,
            entry.vendor_id,
            entry.user_agent,
        )
        marks = ", ".join(placeholders(1, len(_HISTORY_COLUMNS)))
        sql = f"INSERT INTO vv_scan_history ({', '.join(_HISTORY_COLUMNS)}) VALUES ({marks})"
        try:
            with transaction(self.locator, self.backend) as conn:
                execute(conn, self.backend, sql, values)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("HISTORY_APPEND_FAILED", str(exc)[:256]) from exc

    def find_recent(
        self,
        token: str,
        *,
        since_utc: str,
        until_utc: str | None = None,
        limit: int = 50,
    ) -> list[ScanHistoryEntry]:
        if limit <= 0:
            raise StoreUnavailableError("HISTORY_LIMIT_INVALID", "limit must be > 0")
        params: list[Any] = [str(token), since_utc]
        where = "token = {p1} AND scanned_at_utc >= {p2}"
        if until_utc is not None:
            where += " AND scanned_at_utc <= {p3}"
            params.append(until_utc)
        params.append(int(limit))
        limit_mark = f"{{p{len(params)}}}"
        sql = (
            f"SELECT {', '.join(_HISTORY_COLUMNS)} FROM vv_scan_history WHERE {where} "
            f"ORDER BY scanned_at_utc DESC, entry_id DESC LIMIT {limit_mark}"
        )
        return self._query(sql, tuple(params))

    def list_for_token(self, token: str, *, limit: int = 50) -> list[ScanHistoryEntry]:
        sql = (
            f"SELECT {', '.join(_HISTORY_COLUMNS)} FROM vv_scan_history WHERE token = {{p1}} "
            "ORDER BY scanned_at_utc DESC, entry_id DESC LIMIT {p2}"
        )
        return self._query(sql, (str(token), max(1, int(limit))))

    def list_for_product(self, product_id: str, *, limit: int = 50) -> list[ScanHistoryEntry]:
        sql = (
            f"SELECT {', '.join(_HISTORY_COLUMNS)} FROM vv_scan_history WHERE product_id = {{p1}} "
            "ORDER BY scanned_at_utc DESC, entry_id DESC LIMIT {p2}"
        )
        return self._query(sql, (str(product_id), max(1, int(limit))))

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[ScanHistoryEntry]:
        try:
            with transaction(self.locator, self.backend) as conn:
                rows = query_all(conn, self.backend, sql, params)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("HISTORY_READ_FAILED", str(exc)[:256]) from exc
        return [_parse_history_row(row) for row in rows]

    def _init_schema(self) -> None:
        id_column = (
            "entry_id BIGSERIAL PRIMARY KEY"
            if self.backend == "postgres"
            else "entry_id INTEGER PRIMARY KEY AUTOINCREMENT"
        )
        try:
            with transaction(self.locator, self.backend) as conn:
                execute_script(
                    conn,
                    self.backend,
                    f"""
                    CREATE TABLE IF NOT EXISTS vv_scan_history (
                        {id_column},
                        token TEXT NOT NULL,
                        outcome TEXT NOT NULL,
                        source_address TEXT NOT NULL,
                        location TEXT NOT NULL,
                        scanned_at_utc TEXT NOT NULL,
                        product_id TEXT,
                        vendor_id TEXT,
                        user_agent TEXT
                    );
                    CREATE INDEX IF NOT EXISTS ix_vv_scan_history_token_time
                        ON vv_scan_history (token, scanned_at_utc);
                    CREATE INDEX IF NOT EXISTS ix_vv_scan_history_product_time
                        ON vv_scan_history (product_id, scanned_at_utc);
                    """,
                )
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("HISTORY_STORE_INIT_FAILED", str(exc)[:256]) from exc


def _record_params(record: TokenRecord) -> tuple[Any, ...]:
    payload = record.as_dict()
    return tuple(_bind(payload[column]) for column in _RECORD_COLUMNS)


def _bind(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


def _parse_record_row(row: Any) -> TokenRecord:
    payload = {column: row[index] for index, column in enumerate(_RECORD_COLUMNS)}
    payload["verification_count"] = int(payload["verification_count"] or 0)
    payload["is_flagged"] = bool(payload["is_flagged"])
    try:
        return TokenRecord.from_payload(payload)
    except TokenContractError as exc:
        raise StoreUnavailableError("RECORD_ROW_CORRUPT", str(exc)) from exc


def _parse_history_row(row: Any) -> ScanHistoryEntry:
    payload = {column: row[index] for index, column in enumerate(_HISTORY_COLUMNS)}
    try:
        return ScanHistoryEntry(
            token=str(payload["token"]),
            outcome=str(payload["outcome"]),
            source_address=str(payload["source_address"]),
            location=str(payload["location"]),
            scanned_at_utc=str(payload["scanned_at_utc"]),
            product_id=None if payload["product_id"] in (None, "") else str(payload["product_id"]),
            vendor_id=None if payload["vendor_id"] in (None, "") else str(payload["vendor_id"]),
            user_agent=None if payload["user_agent"] in (None, "") else str(payload["user_agent"]),
        )
    except TokenContractError as exc:
        raise StoreUnavailableError("HISTORY_ROW_CORRUPT", str(exc)) from exc
