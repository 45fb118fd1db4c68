"""Assemble verification services from a wiring profile."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

import requests

from .admin import TokenAdministration
from .config import (
    GeolocationWiring,
    VerificationPolicy,
    VerificationWiring,
    load_verification_policy,
    load_wiring_profile,
)
from .evaluator import VerificationEngine
from .geolocation import (
    FailOpenGeolocationResolver,
    GeolocationResolver,
    HttpGeolocationResolver,
    StaticGeolocationResolver,
)
from .observability import VerificationMetrics
from .rendering import LocalQrArtifactRenderer, QrArtifactRenderer
from .reports import CounterfeitReportService, CounterfeitReportStore
from .rotation import TokenIssuer
from .store import ScanHistoryStore, TokenRecordStore

logger = logging.getLogger("vendor_verify.token_verification.runtime")


@dataclass
class VerificationRuntime:
    wiring: VerificationWiring
    policy: VerificationPolicy
    records: TokenRecordStore
    history: ScanHistoryStore
    metrics: VerificationMetrics
    engine: VerificationEngine
    issuer: TokenIssuer
    admin: TokenAdministration
    reports: CounterfeitReportService

    def export_metrics(self) -> dict | None:
        if self.wiring.metrics_path is None:
            return None
        return self.metrics.export(output_path=self.wiring.metrics_path)


def build_geolocation_resolver(
    wiring: GeolocationWiring,
    *,
    session: requests.Session | None = None,
) -> GeolocationResolver:
    if wiring.mode == "http":
        inner: GeolocationResolver = HttpGeolocationResolver(
            endpoint_template=str(wiring.http_endpoint),
            timeout_seconds=wiring.http_timeout_seconds,
            session=session,
        )
    else:
        inner = StaticGeolocationResolver(table=dict(wiring.static_table))
    return FailOpenGeolocationResolver(inner=inner)


def build_runtime(
    wiring: VerificationWiring,
    *,
    policy: VerificationPolicy | None = None,
    renderer: QrArtifactRenderer | None = None,
    geolocation: GeolocationResolver | None = None,
    metrics: VerificationMetrics | None = None,
) -> VerificationRuntime:
    active_policy = policy or load_verification_policy(wiring.policy_ref)
    active_metrics = metrics or VerificationMetrics()
    records = TokenRecordStore(locator=wiring.record_store_dsn)
    history = ScanHistoryStore(locator=wiring.history_store_dsn)
    report_store = CounterfeitReportStore(locator=wiring.report_store_dsn)
    resolver = geolocation or build_geolocation_resolver(wiring.geolocation)
    qr_renderer = renderer or LocalQrArtifactRenderer(
        output_dir=wiring.artifact_dir,
        base_url=wiring.artifact_base_url,
    )
    admin = TokenAdministration(records=records, metrics=active_metrics)
    logger.info(
        "verification runtime ready profile=%s policy=%s digest=%s geolocation=%s",
        wiring.profile_id,
        active_policy.policy_id,
        active_policy.content_digest[:12],
        wiring.geolocation.mode,
    )
    return VerificationRuntime(
        wiring=wiring,
        policy=active_policy,
        records=records,
        history=history,
        metrics=active_metrics,
        engine=VerificationEngine(
            policy=active_policy,
            records=records,
            history=history,
            geolocation=resolver,
            metrics=active_metrics,
        ),
        issuer=TokenIssuer(
            policy=active_policy,
            records=records,
            renderer=qr_renderer,
            metrics=active_metrics,
        ),
        admin=admin,
        reports=CounterfeitReportService(store=report_store, admin=admin, metrics=active_metrics),
    )


def load_runtime(profile_path: Path) -> VerificationRuntime:
    return build_runtime(load_wiring_profile(Path(profile_path)))
