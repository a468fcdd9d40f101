"""Risk Register API Schemas.

Schemas are organized by domain:
- base: Common configuration, pagination, errors
- catalog: Risks, causes, impacts, controls, indicators, tolerance limits
- breaches: Measurements, indicator breaches, limit breaches and exceptions
- periods: Period commits and risk history
- audit: Audit log entries and chain verification
"""

from .audit import AuditLogEntry, AuditLogResponse, ChainVerificationResponse
from .base import (
    ErrorDetail,
    ErrorResponse,
    PaginatedResponse,
    RegisterBaseModel,
    TimestampMixin,
)
from .breaches import (
    ActiveBreachResponse,
    BreachActionAssign,
    BreachAnalysisUpdate,
    BreachNotes,
    BreachPriorityUpdate,
    BreachRemediation,
    BreachResolve,
    BreachResponse,
    EffectiveThresholdsResponse,
    ExceptionApproval,
    ExceptionRejection,
    IndicatorHealthResponse,
    IndicatorTrendResponse,
    LimitBreachStatisticsResponse,
    LimitCheckResponse,
    LimitMeasurementCreate,
    MeasurementCreate,
    MeasurementResponse,
    OverdueHardBreachResponse,
    RiskBreachResponse,
    ToleranceExceptionCreate,
)
from .catalog import (
    AssignmentCreate,
    AssignmentOverridesUpdate,
    AssignmentResponse,
    CatalogEntryCreate,
    CatalogEntryResponse,
    ControlCreate,
    ControlLinkCreate,
    ControlLinkResponse,
    ControlResponse,
    ImpactLinkCreate,
    ImpactLinkResponse,
    IndicatorCreate,
    IndicatorResponse,
    IndicatorThresholdsUpdate,
    RiskCreate,
    RiskResponse,
    RiskUpdate,
    RootCauseLinkCreate,
    RootCauseLinkResponse,
    ToleranceLimitCreate,
    ToleranceLimitResponse,
)
from .periods import (
    ActivePeriodResponse,
    InvariantRepairResponse,
    PeriodCommitCreate,
    PeriodCommitResponse,
    PeriodCommitResultResponse,
    PeriodComparisonResponse,
    PeriodTrendResponse,
    RiskChangeResponse,
    RiskHistoryResponse,
)

__all__ = [
    # Base
    "ErrorDetail",
    "ErrorResponse",
    "PaginatedResponse",
    "RegisterBaseModel",
    "TimestampMixin",
    # Catalog
    "AssignmentCreate",
    "AssignmentOverridesUpdate",
    "AssignmentResponse",
    "CatalogEntryCreate",
    "CatalogEntryResponse",
    "ControlCreate",
    "ControlLinkCreate",
    "ControlLinkResponse",
    "ControlResponse",
    "ImpactLinkCreate",
    "ImpactLinkResponse",
    "IndicatorCreate",
    "IndicatorResponse",
    "IndicatorThresholdsUpdate",
    "RiskCreate",
    "RiskResponse",
    "RiskUpdate",
    "RootCauseLinkCreate",
    "RootCauseLinkResponse",
    "ToleranceLimitCreate",
    "ToleranceLimitResponse",
    # Breaches
    "ActiveBreachResponse",
    "BreachActionAssign",
    "BreachAnalysisUpdate",
    "BreachNotes",
    "BreachPriorityUpdate",
    "BreachRemediation",
    "BreachResolve",
    "BreachResponse",
    "EffectiveThresholdsResponse",
    "ExceptionApproval",
    "ExceptionRejection",
    "IndicatorHealthResponse",
    "IndicatorTrendResponse",
    "LimitBreachStatisticsResponse",
    "LimitCheckResponse",
    "LimitMeasurementCreate",
    "MeasurementCreate",
    "MeasurementResponse",
    "OverdueHardBreachResponse",
    "RiskBreachResponse",
    "ToleranceExceptionCreate",
    # Periods
    "ActivePeriodResponse",
    "InvariantRepairResponse",
    "PeriodCommitCreate",
    "PeriodCommitResponse",
    "PeriodCommitResultResponse",
    "PeriodComparisonResponse",
    "PeriodTrendResponse",
    "RiskChangeResponse",
    "RiskHistoryResponse",
    # Audit
    "AuditLogEntry",
    "AuditLogResponse",
    "ChainVerificationResponse",
]
