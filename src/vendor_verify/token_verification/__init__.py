"""Token verification lifecycle, anomaly scoring and administration surfaces."""

from .admin import TokenAdministration
from .anomaly import ANOMALY_REASONS, AnomalyAssessment, assess_window
from .config import (
    VerificationConfigError,
    VerificationPolicy,
    VerificationWiring,
    load_verification_policy,
    load_wiring_profile,
)
from .contracts import (
    LIFECYCLE_STATES,
    SCAN_OUTCOMES,
    AdminSetStateCommand,
    Decision,
    EvaluateCommand,
    RotateTokenCommand,
    ScanHistoryEntry,
    TokenContractError,
    TokenRecord,
)
from .errors import (
    ArtifactRenderError,
    StoreUnavailableError,
    TokenConflictError,
    TokenNotFoundError,
    VerificationError,
    VerificationInputError,
    reason_code,
)
from .evaluator import VerificationEngine
from .geolocation import (
    UNKNOWN_LOCATION,
    FailOpenGeolocationResolver,
    HttpGeolocationResolver,
    StaticGeolocationResolver,
    normalize_source_address,
)
from .lifecycle import apply_command
from .observability import VerificationMetrics
from .rendering import LocalQrArtifactRenderer
from .reports import REPORT_STATUSES, CounterfeitReportService, CounterfeitReportStore
from .rotation import IssuedToken, TokenIssuer
from .runtime import VerificationRuntime, build_runtime, load_runtime
from .store import ScanHistoryStore, TokenRecordStore

__all__ = [
    "ANOMALY_REASONS",
    "AdminSetStateCommand",
    "AnomalyAssessment",
    "ArtifactRenderError",
    "CounterfeitReportService",
    "CounterfeitReportStore",
    "Decision",
    "EvaluateCommand",
    "FailOpenGeolocationResolver",
    "HttpGeolocationResolver",
    "IssuedToken",
    "LIFECYCLE_STATES",
    "LocalQrArtifactRenderer",
    "REPORT_STATUSES",
    "RotateTokenCommand",
    "SCAN_OUTCOMES",
    "ScanHistoryEntry",
    "ScanHistoryStore",
    "StaticGeolocationResolver",
    "StoreUnavailableError",
    "TokenAdministration",
    "TokenConflictError",
    "TokenContractError",
    "TokenIssuer",
    "TokenNotFoundError",
    "TokenRecord",
    "TokenRecordStore",
    "UNKNOWN_LOCATION",
    "VerificationConfigError",
    "VerificationEngine",
    "VerificationError",
    "VerificationInputError",
    "VerificationMetrics",
    "VerificationPolicy",
    "VerificationRuntime",
    "VerificationWiring",
    "apply_command",
    "assess_window",
    "build_runtime",
    "load_runtime",
    "load_verification_policy",
    "load_wiring_profile",
    "normalize_source_address",
    "reason_code",
]
