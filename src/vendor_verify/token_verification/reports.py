"""Public counterfeit reports and their admin review queue (Phase 8)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
import uuid

from .admin import TokenAdministration
from .contracts import TokenContractError, format_utc, parse_utc
from .errors import StoreUnavailableError, TokenNotFoundError, VerificationInputError
from .observability import VerificationMetrics
from .sql import STORE_ERRORS, backend_for, execute, execute_script, query_all, query_one, transaction

logger = logging.getLogger("vendor_verify.token_verification.reports")

REPORT_STATUSES: tuple[str, ...] = ("NEW", "REVIEWED", "DISMISSED", "ACTIONED")
DEDUPE_WINDOW_SECONDS = 3600
MAX_PAGE_LIMIT = 200

_FIELD_LIMITS = {
    "reason": 200,
    "details": 1200,
    "reporter_name": 80,
    "reporter_email": 120,
    "reporter_ip": 80,
    "reporter_user_agent": 300,
    "admin_notes": 1200,
}
_COLUMNS = (
    "report_id",
    "product_id",
    "vendor_id",
    "token",
    "reason",
    "details",
    "reporter_name",
    "reporter_email",
    "reporter_ip",
    "reporter_user_agent",
    "status",
    "admin_notes",
    "created_at_utc",
    "updated_at_utc",
)


@dataclass(frozen=True)
class CounterfeitReport:
    report_id: str
    product_id: str
    vendor_id: str | None
    token: str | None
    reason: str
    details: str
    reporter_name: str
    reporter_email: str
    reporter_ip: str
    reporter_user_agent: str
    status: str
    admin_notes: str
    created_at_utc: str
    updated_at_utc: str

    def as_dict(self) -> dict[str, Any]:
        return {column: getattr(self, column) for column in _COLUMNS}


@dataclass(frozen=True)
class ReportSubmission:
    report: CounterfeitReport
    deduped: bool


@dataclass(frozen=True)
class ReportPage:
    page: int
    limit: int
    total: int
    reports: tuple[CounterfeitReport, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "reports": [report.as_dict() for report in self.reports],
        }


class CounterfeitReportStore:
    def __init__(self, *, locator: str) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise StoreUnavailableError("STORE_LOCATOR_MISSING", "report store")
        self.backend = backend_for(self.locator)
        self._init_schema()

    def insert(self, report: CounterfeitReport) -> None:
        marks = ", ".join(f"{{p{idx}}}" for idx in range(1, len(_COLUMNS) + 1))
        sql = f"INSERT INTO vv_counterfeit_report ({', '.join(_COLUMNS)}) VALUES ({marks})"
        self._write(sql, tuple(getattr(report, column) for column in _COLUMNS))

    def find_recent_from_reporter(self, *, product_id: str, reporter_ip: str, since_utc: str) -> CounterfeitReport | None:
        sql = (
            f"SELECT {', '.join(_COLUMNS)} FROM vv_counterfeit_report "
            "WHERE product_id = {p1} AND reporter_ip = {p2} AND created_at_utc >= {p3} "
            "ORDER BY created_at_utc DESC LIMIT 1"
        )
        rows = self._read(sql, (product_id, reporter_ip, since_utc))
        return rows[0] if rows else None

    def get(self, report_id: str) -> CounterfeitReport | None:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM vv_counterfeit_report WHERE report_id = {{p1}}"
        rows = self._read(sql, (report_id,))
        return rows[0] if rows else None

    def page(self, *, status: str | None, offset: int, limit: int) -> tuple[int, list[CounterfeitReport]]:
        where = "" if status is None else "WHERE status = {p1}"
        params: tuple[Any, ...] = () if status is None else (status,)
        count_sql = f"SELECT COUNT(*) FROM vv_counterfeit_report {where}"
        base = len(params)
        list_sql = (
            f"SELECT {', '.join(_COLUMNS)} FROM vv_counterfeit_report {where} "
            f"ORDER BY created_at_utc DESC LIMIT {{p{base + 1}}} OFFSET {{p{base + 2}}}"
        )
        try:
            with transaction(self.locator, self.backend) as conn:
                total_row = query_one(conn, self.backend, count_sql, params)
                rows = query_all(conn, self.backend, list_sql, params + (limit, offset))
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("REPORT_STORE_READ_FAILED", str(exc)[:256]) from exc
        total = int(total_row[0]) if total_row else 0
        return total, [_parse_row(row) for row in rows]

    def update(self, report_id: str, *, fields: dict[str, Any], updated_at_utc: str) -> bool:
        assignments = [f"{column} = {{p{idx}}}" for idx, column in enumerate(fields, start=1)]
        next_idx = len(fields) + 1
        assignments.append(f"updated_at_utc = {{p{next_idx}}}")
        sql = (
            f"UPDATE vv_counterfeit_report SET {', '.join(assignments)} "
            f"WHERE report_id = {{p{next_idx + 1}}}"
        )
        params = tuple(fields.values()) + (updated_at_utc, report_id)
        try:
            with transaction(self.locator, self.backend) as conn:
                affected = execute(conn, self.backend, sql, params)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("REPORT_STORE_WRITE_FAILED", str(exc)[:256]) from exc
        return affected > 0

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        try:
            with transaction(self.locator, self.backend) as conn:
                execute(conn, self.backend, sql, params)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("REPORT_STORE_WRITE_FAILED", str(exc)[:256]) from exc

    def _read(self, sql: str, params: tuple[Any, ...]) -> list[CounterfeitReport]:
        try:
            with transaction(self.locator, self.backend) as conn:
                rows = query_all(conn, self.backend, sql, params)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("REPORT_STORE_READ_FAILED", str(exc)[:256]) from exc
        return [_parse_row(row) for row in rows]

    def _init_schema(self) -> None:
        try:
            with transaction(self.locator, self.backend) as conn:
                execute_script(
                    conn,
                    self.backend,
                    """
                    CREATE TABLE IF NOT EXISTS vv_counterfeit_report (
                        report_id TEXT PRIMARY KEY,
                        product_id TEXT NOT NULL,
                        vendor_id TEXT,
                        token TEXT,
                        reason TEXT NOT NULL,
                        details TEXT NOT NULL,
                        reporter_name TEXT NOT NULL,
                        reporter_email TEXT NOT NULL,
                        reporter_ip TEXT NOT NULL,
                        reporter_user_agent TEXT NOT NULL,
                        status TEXT NOT NULL,
                        admin_notes TEXT NOT NULL,
                        created_at_utc TEXT NOT NULL,
                        updated_at_utc TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS ix_vv_counterfeit_report_product
                        ON vv_counterfeit_report (product_id, created_at_utc);
                    CREATE INDEX IF NOT EXISTS ix_vv_counterfeit_report_status
                        ON vv_counterfeit_report (status, created_at_utc);
                    """,
                )
        except STORE_ERRORS as exc:
            raise StoreUnavailableError("REPORT_STORE_INIT_FAILED", str(exc)[:256]) from exc


@dataclass
class CounterfeitReportService:
    store: CounterfeitReportStore
    admin: TokenAdministration
    metrics: VerificationMetrics = field(default_factory=VerificationMetrics)

    def submit_report(
        self,
        product_id: str,
        *,
        reason: str | None,
        details: str | None = None,
        reporter_name: str | None = None,
        reporter_email: str | None = None,
        reporter_ip: str | None = None,
        reporter_user_agent: str | None = None,
        submitted_at_utc: str | datetime | None = None,
    ) -> ReportSubmission:
        clean_reason = _clamp(reason, "reason")
        if not clean_reason:
            raise VerificationInputError("REPORT_REASON_REQUIRED")
        record = self.admin.records.find_by_id(str(product_id or "").strip())
        if record is None:
            raise TokenNotFoundError("PRODUCT_NOT_FOUND", str(product_id or "<blank>"))

        if submitted_at_utc:
            try:
                now_dt = parse_utc(submitted_at_utc, field_name="submitted_at_utc")
            except TokenContractError as exc:
                raise VerificationInputError("SUBMITTED_AT_INVALID", str(exc)) from exc
        else:
            now_dt = datetime.now(tz=timezone.utc)
        now_utc = format_utc(now_dt)
        ip = _clamp(reporter_ip, "reporter_ip")

        existing = self.store.find_recent_from_reporter(
            product_id=record.product_id,
            reporter_ip=ip,
            since_utc=format_utc(now_dt - timedelta(seconds=DEDUPE_WINDOW_SECONDS)),
        )
        if existing is not None:
            self.metrics.record_report(product_id=record.product_id, deduped=True)
            return ReportSubmission(report=existing, deduped=True)

        report = CounterfeitReport(
            report_id=uuid.uuid4().hex,
            product_id=record.product_id,
            vendor_id=record.vendor_id,
            token=record.token,
            reason=clean_reason,
            details=_clamp(details, "details"),
            reporter_name=_clamp(reporter_name, "reporter_name"),
            reporter_email=_clamp(reporter_email, "reporter_email").lower(),
            reporter_ip=ip,
            reporter_user_agent=_clamp(reporter_user_agent, "reporter_user_agent"),
            status="NEW",
            admin_notes="",
            created_at_utc=now_utc,
            updated_at_utc=now_utc,
        )
        self.store.insert(report)
        if not record.is_flagged:
            self.admin.set_lifecycle_state(record.product_id, None, is_flagged=True, actor="COUNTERFEIT_REPORT")
        self.metrics.record_report(product_id=record.product_id, deduped=False)
        logger.info("counterfeit report received report_id=%s product_id=%s", report.report_id, record.product_id)
        return ReportSubmission(report=report, deduped=False)

    def list_reports(self, *, status: str | None = "all", page: int = 1, limit: int = 50) -> ReportPage:
        normalized = str(status or "all").strip()
        status_filter: str | None = None
        if normalized.lower() != "all":
            status_filter = normalized.upper()
            if status_filter not in REPORT_STATUSES:
                raise VerificationInputError("REPORT_STATUS_INVALID", normalized)
        page_number = page if isinstance(page, int) and page > 0 else 1
        page_limit = min(limit if isinstance(limit, int) and limit > 0 else 50, MAX_PAGE_LIMIT)
        total, reports = self.store.page(
            status=status_filter,
            offset=(page_number - 1) * page_limit,
            limit=page_limit,
        )
        return ReportPage(page=page_number, limit=page_limit, total=total, reports=tuple(reports))

    def update_report(
        self,
        report_id: str,
        *,
        status: str | None = None,
        admin_notes: str | None = None,
    ) -> CounterfeitReport:
        fields: dict[str, Any] = {}
        if status:
            next_status = str(status).strip().upper()
            if next_status not in REPORT_STATUSES:
                raise VerificationInputError("REPORT_STATUS_INVALID", str(status))
            fields["status"] = next_status
        if isinstance(admin_notes, str):
            fields["admin_notes"] = _clamp(admin_notes, "admin_notes")
        key = str(report_id or "").strip()
        if fields and not self.store.update(key, fields=fields, updated_at_utc=format_utc(datetime.now(tz=timezone.utc))):
            raise TokenNotFoundError("REPORT_NOT_FOUND", key)
        report = self.store.get(key)
        if report is None:
            raise TokenNotFoundError("REPORT_NOT_FOUND", key)
        return report


def _clamp(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[: _FIELD_LIMITS[field_name]]


def _parse_row(row: Any) -> CounterfeitReport:
    payload = {column: row[index] for index, column in enumerate(_COLUMNS)}
    for column in ("vendor_id", "token"):
        if payload[column] in (None, ""):
            payload[column] = None
    return CounterfeitReport(**payload)
