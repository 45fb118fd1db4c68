"""Rolling-window scan anomaly heuristics (Phase 3)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .config import VerificationPolicy
from .contracts import OUTCOME_ALREADY_USED, ScanHistoryEntry

ANOMALY_REASONS: tuple[str, ...] = (
    "BURST",
    "SOURCE_DIVERSITY",
    "LOCATION_DIVERSITY",
    "POST_USE_BURST",
)


@dataclass(frozen=True)
class AnomalyAssessment:
    scan_count: int
    unique_sources: int
    unique_locations: int
    reasons: tuple[str, ...]

    @property
    def anomalous(self) -> bool:
        return bool(self.reasons)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scan_count": self.scan_count,
            "unique_sources": self.unique_sources,
            "unique_locations": self.unique_locations,
            "anomalous": self.anomalous,
            "reasons": list(self.reasons),
        }


def assess_window(
    window_entries: Iterable[ScanHistoryEntry],
    *,
    current_address: str,
    current_location: str,
    baseline_outcome: str,
    policy: VerificationPolicy,
) -> AnomalyAssessment:
    """Score the recent window plus the presentation being evaluated."""
    entries = list(window_entries)
    scan_count = len(entries) + 1
    sources = {entry.source_address for entry in entries}
    sources.add(current_address)
    locations = {entry.location for entry in entries}
    locations.add(current_location)

    reasons: list[str] = []
    if scan_count > policy.burst_threshold:
        reasons.append("BURST")
    if len(sources) > policy.max_unique_sources:
        reasons.append("SOURCE_DIVERSITY")
    if len(locations) > policy.max_unique_locations:
        reasons.append("LOCATION_DIVERSITY")
    if baseline_outcome == OUTCOME_ALREADY_USED and scan_count > policy.post_use_burst_threshold:
        reasons.append("POST_USE_BURST")

    return AnomalyAssessment(
        scan_count=scan_count,
        unique_sources=len(sources),
        unique_locations=len(locations),
        reasons=tuple(reasons),
    )
