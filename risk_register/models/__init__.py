"""SQLAlchemy models for the Risk Register."""

from .base import Base, TimestampMixin, UUIDMixin, as_utc, utcnow
from .models import (
    # Enums
    AuditAction,
    BreachLevel,
    BreachStatus,
    ChangeType,
    Direction,
    IndicatorStatus,
    IndicatorType,
    LimitBreachKind,
    LimitBreachStatus,
    LimitDirection,
    MeasurementFrequency,
    RiskStatus,
    Severity,
    # Register
    Control,
    Impact,
    Risk,
    RiskControl,
    RiskImpact,
    RiskRootCause,
    RootCause,
    # Indicators
    Breach,
    IndicatorAssignment,
    IndicatorDefinition,
    # Appetite
    RiskBreach,
    ToleranceLimit,
    # Periods
    ActivePeriod,
    PeriodCommit,
    RiskHistory,
    # Audit
    AuditLog,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    # Enums
    "AuditAction",
    "BreachLevel",
    "BreachStatus",
    "ChangeType",
    "Direction",
    "IndicatorStatus",
    "IndicatorType",
    "LimitBreachKind",
    "LimitBreachStatus",
    "LimitDirection",
    "MeasurementFrequency",
    "RiskStatus",
    "Severity",
    # Register
    "Control",
    "Impact",
    "Risk",
    "RiskControl",
    "RiskImpact",
    "RiskRootCause",
    "RootCause",
    # Indicators
    "Breach",
    "IndicatorAssignment",
    "IndicatorDefinition",
    # Appetite
    "RiskBreach",
    "ToleranceLimit",
    # Periods
    "ActivePeriod",
    "PeriodCommit",
    "RiskHistory",
    # Audit
    "AuditLog",
]
