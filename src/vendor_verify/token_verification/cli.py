"""Token verification operator CLI."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any

from .errors import VerificationError, reason_code
from .logging_utils import configure_logging
from .runtime import VerificationRuntime, load_runtime

logger = logging.getLogger("vendor_verify.token_verification.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="QR product token verification")
    parser.add_argument("--profile", required=True, help="Path to verification wiring profile YAML")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Issue a token for a new product")
    issue.add_argument("--vendor-id", required=True)
    issue.add_argument("--product-id", default=None)
    issue.add_argument("--expires-at", default=None, help="RFC3339 UTC expiry")

    verify = sub.add_parser("verify", help="Evaluate a token presentation")
    verify.add_argument("token")
    verify.add_argument("--source", default=None, help="Presenting network address")
    verify.add_argument("--at", default=None, help="Presentation timestamp (RFC3339 UTC)")
    verify.add_argument("--user-agent", default=None)

    rotate = sub.add_parser("rotate", help="Replace a product's token")
    rotate.add_argument("product_id")

    set_state = sub.add_parser("set-state", help="Override lifecycle state or flag")
    set_state.add_argument("token_or_id")
    set_state.add_argument("--state", default=None, choices=("GENERATED", "ACTIVE", "CONSUMED", "BLOCKED"))
    flag = set_state.add_mutually_exclusive_group()
    flag.add_argument("--flag", dest="is_flagged", action="store_const", const=True, default=None)
    flag.add_argument("--unflag", dest="is_flagged", action="store_const", const=False)
    set_state.add_argument("--actor", default="ADMIN")

    history = sub.add_parser("history", help="List recent presentations for a product")
    history.add_argument("product_id")
    history.add_argument("--limit", type=int, default=50)

    report = sub.add_parser("report", help="Submit a counterfeit report")
    report.add_argument("product_id")
    report.add_argument("--reason", required=True)
    report.add_argument("--details", default=None)
    report.add_argument("--name", default=None)
    report.add_argument("--email", default=None)
    report.add_argument("--source", default=None)

    reports = sub.add_parser("reports", help="List or update counterfeit reports")
    reports.add_argument("--status", default="all")
    reports.add_argument("--page", type=int, default=1)
    reports.add_argument("--limit", type=int, default=50)
    reports.add_argument("--update", default=None, metavar="REPORT_ID")
    reports.add_argument("--set-status", default=None)
    reports.add_argument("--notes", default=None)
    return parser


def run_command(runtime: VerificationRuntime, args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "issue":
        return runtime.issuer.issue(
            vendor_id=args.vendor_id,
            product_id=args.product_id,
            expires_at_utc=args.expires_at,
        ).as_dict()
    if args.command == "verify":
        return runtime.engine.evaluate_presentation(
            args.token,
            args.source,
            args.at,
            user_agent=args.user_agent,
        ).as_dict()
    if args.command == "rotate":
        return runtime.issuer.rotate(args.product_id).as_dict()
    if args.command == "set-state":
        record = runtime.admin.set_lifecycle_state(
            args.token_or_id,
            args.state,
            is_flagged=args.is_flagged,
            actor=args.actor,
        )
        return record.as_dict()
    if args.command == "history":
        entries = runtime.history.list_for_product(args.product_id, limit=args.limit)
        return {"product_id": args.product_id, "entries": [entry.as_dict() for entry in entries]}
    if args.command == "report":
        submission = runtime.reports.submit_report(
            args.product_id,
            reason=args.reason,
            details=args.details,
            reporter_name=args.name,
            reporter_email=args.email,
            reporter_ip=args.source,
        )
        return {"deduped": submission.deduped, "report": submission.report.as_dict()}
    if args.command == "reports":
        if args.update:
            return runtime.reports.update_report(
                args.update,
                status=args.set_status,
                admin_notes=args.notes,
            ).as_dict()
        return runtime.reports.list_reports(status=args.status, page=args.page, limit=args.limit).as_dict()
    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    runtime = load_runtime(Path(args.profile))
    try:
        payload = run_command(runtime, args)
    except VerificationError as exc:
        logger.error("command %s failed: %s", args.command, exc)
        print(json.dumps({"error": reason_code(exc)}, sort_keys=True, ensure_ascii=True))
        return 1
    finally:
        runtime.export_metrics()
    print(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
