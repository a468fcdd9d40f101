"""Business logic services for the Risk Register."""

from .audit import AuditEvent, AuditRecorder, ChainVerification
from .breach_engine import (
    ActiveBreachView,
    BreachConfig,
    BreachEngine,
    IndicatorHealth,
    IndicatorTrend,
    MeasurementResult,
    config_from_settings as breach_config_from_settings,
)
from .catalog import CatalogService
from .errors import (
    ConcurrencyConflict,
    ConfigurationError,
    DuplicatePeriodCommit,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    RiskEngineError,
    ValidationError,
    WorkflowStateError,
)
from .escalation_engine import (
    EscalationConfig,
    EscalationEngine,
    ExceptionExpiryStats,
    ExceptionRequestInput,
    LimitBreachStatistics,
    LimitCheckResult,
    OverdueHardBreach,
    config_from_settings as escalation_config_from_settings,
)
from .period_snapshotter import (
    Period,
    PeriodCommitResult,
    PeriodComparison,
    PeriodSnapshotter,
    PeriodTrend,
    RiskSnapshot,
    format_period,
    next_period,
    parse_period,
)
from .primary_invariant import InvariantRepair, PrimaryInvariantEnforcer
from .thresholds import (
    EffectiveThresholds,
    LimitEvaluation,
    auto_priority,
    breach_percentage,
    classify_level,
    classify_limit,
    resolve_limit,
    resolve_thresholds,
)

__all__ = [
    # Errors
    "RiskEngineError",
    "NotFoundError",
    "ValidationError",
    "PermissionDeniedError",
    "ConfigurationError",
    "ConcurrencyConflict",
    "InvariantViolation",
    "WorkflowStateError",
    "DuplicatePeriodCommit",
    # Threshold resolver / classifier
    "EffectiveThresholds",
    "LimitEvaluation",
    "resolve_thresholds",
    "resolve_limit",
    "classify_level",
    "classify_limit",
    "breach_percentage",
    "auto_priority",
    # Audit
    "AuditEvent",
    "AuditRecorder",
    "ChainVerification",
    # Breach engine
    "BreachConfig",
    "BreachEngine",
    "MeasurementResult",
    "ActiveBreachView",
    "IndicatorTrend",
    "IndicatorHealth",
    "breach_config_from_settings",
    # Escalation engine
    "EscalationConfig",
    "EscalationEngine",
    "ExceptionRequestInput",
    "ExceptionExpiryStats",
    "LimitBreachStatistics",
    "LimitCheckResult",
    "OverdueHardBreach",
    "escalation_config_from_settings",
    # Period snapshotter
    "Period",
    "PeriodCommitResult",
    "PeriodComparison",
    "PeriodSnapshotter",
    "PeriodTrend",
    "RiskSnapshot",
    "format_period",
    "next_period",
    "parse_period",
    # Primary invariant
    "InvariantRepair",
    "PrimaryInvariantEnforcer",
    # Catalog
    "CatalogService",
]
