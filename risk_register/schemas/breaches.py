"""Pydantic schemas for measurements, indicator breaches and limit breaches."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator

from ..models import (
    BreachLevel,
    BreachStatus,
    Direction,
    LimitBreachKind,
    LimitBreachStatus,
    Severity,
)
from .base import RegisterBaseModel


# =============================================================================
# MEASUREMENTS
# =============================================================================


class MeasurementCreate(RegisterBaseModel):
    """A measured value for an (indicator, risk) assignment."""

    assignment_id: UUID
    value: float
    observed_at: datetime | None = Field(
        default=None,
        description="When the value was observed; defaults to now",
    )


class EffectiveThresholdsResponse(RegisterBaseModel):
    warning: float | None = None
    critical: float | None = None
    direction: Direction
    warning_source: str | None = None
    critical_source: str | None = None


class LimitCheckResponse(RegisterBaseModel):
    limit_id: UUID
    kind: LimitBreachKind
    limit_value: float | None = None
    variance_amount: float = 0.0
    variance_percentage: float | None = None
    risk_breach_id: UUID | None = None
    opened: bool = False
    escalated: bool = False
    notified_roles: list[str] = []


class MeasurementResponse(RegisterBaseModel):
    assignment_id: UUID
    level: BreachLevel
    undetermined: bool
    thresholds: EffectiveThresholdsResponse
    breach_id: UUID | None = None
    breach_opened: bool = False
    limit_breach_ids: list[UUID] = []
    limit_checks: list[LimitCheckResponse] = []
    configuration_error: str | None = None
    late: bool = False


# =============================================================================
# INDICATOR BREACHES
# =============================================================================


class BreachResponse(RegisterBaseModel):
    id: UUID
    assignment_id: UUID | None = None
    indicator_id: UUID | None = None
    risk_id: UUID | None = None
    breach_level: BreachLevel
    measured_value: float
    threshold_value: float
    unit: str | None = None
    breach_percentage: float | None = None
    consecutive_breach_count: int
    status: BreachStatus
    priority: Severity
    priority_overridden: bool
    action_owner: UUID | None = None
    action_plan: str | None = None
    action_due_date: datetime | None = None
    root_cause_analysis: str | None = None
    preventive_actions: str | None = None
    breach_date: datetime
    last_measured_at: datetime
    acknowledged_by: UUID | None = None
    acknowledged_at: datetime | None = None
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    breach_duration_hours: float | None = None


class ActiveBreachResponse(RegisterBaseModel):
    breach: BreachResponse
    indicator_code: str | None = None
    indicator_name: str | None = None
    risk_code: str | None = None
    risk_title: str | None = None
    hours_active: float
    urgency: str


class BreachNotes(RegisterBaseModel):
    notes: str | None = None


class BreachResolve(RegisterBaseModel):
    notes: str = Field(..., min_length=1, description="Mandatory resolution notes")


class BreachRemediation(RegisterBaseModel):
    action_plan: str | None = None


class BreachPriorityUpdate(RegisterBaseModel):
    priority: Severity


class BreachActionAssign(RegisterBaseModel):
    owner_id: UUID
    action_plan: str | None = None
    due_date: datetime | None = None


class BreachAnalysisUpdate(RegisterBaseModel):
    root_cause_analysis: str | None = None
    preventive_actions: str | None = None


class IndicatorTrendResponse(RegisterBaseModel):
    indicator_id: UUID
    indicator_code: str
    indicator_name: str
    total_breaches: int
    warning_breaches: int
    critical_breaches: int
    resolved_breaches: int
    active_breaches: int
    avg_resolution_hours: float | None = None
    max_resolution_hours: float | None = None
    first_breach_date: datetime
    latest_breach_date: datetime
    breaches_per_day: float
    avg_breach_percentage: float | None = None
    max_breach_percentage: float | None = None


class IndicatorHealthResponse(RegisterBaseModel):
    indicator_id: UUID
    indicator_code: str
    indicator_name: str
    threshold_warning: float | None = None
    threshold_critical: float | None = None
    breaches_in_window: int
    breaches_recent: int
    critical_breaches_in_window: int
    latest_breach_date: datetime | None = None
    highest_measured_value: float | None = None
    health_status: str
    trend: str


# =============================================================================
# LIMIT BREACHES
# =============================================================================


class LimitMeasurementCreate(RegisterBaseModel):
    """A directly reported value for an appetite tolerance metric."""

    limit_id: UUID
    value: float
    observed_at: datetime | None = None


class RiskBreachResponse(RegisterBaseModel):
    id: UUID
    limit_id: UUID
    indicator_breach_id: UUID | None = None
    assignment_id: UUID | None = None
    risk_id: UUID | None = None
    breach_type: LimitBreachKind
    measured_value: float
    latest_value: float | None = None
    limit_value: float
    variance_amount: float
    variance_percentage: float | None = None
    severity: Severity
    status: LimitBreachStatus
    breach_date: datetime
    last_measured_at: datetime
    within_limits_at: datetime | None = None
    notified_roles: list[str] = []
    business_justification: str | None = None
    compensating_controls: str | None = None
    exception_requested_by: UUID | None = None
    exception_requested_at: datetime | None = None
    valid_until: datetime | None = None
    approval_decided_by: UUID | None = None
    approval_decided_at: datetime | None = None
    approval_rationale: str | None = None
    rejection_reason: str | None = None
    expired_exception_count: int
    escalated_to_cro: bool
    escalated_to_cro_at: datetime | None = None
    escalated_to_board: bool
    escalated_to_board_at: datetime | None = None
    regulator_notified: bool
    regulator_notified_at: datetime | None = None
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None


class ToleranceExceptionCreate(RegisterBaseModel):
    """Request to tolerate a hard-limit breach until ``valid_until``."""

    business_justification: str = Field(..., min_length=10)
    compensating_controls: str = Field(..., min_length=1)
    valid_until: datetime

    @field_validator("business_justification", "compensating_controls")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class ExceptionApproval(RegisterBaseModel):
    rationale: str | None = None


class ExceptionRejection(RegisterBaseModel):
    reason: str = Field(..., min_length=1)


class OverdueHardBreachResponse(RegisterBaseModel):
    breach: RiskBreachResponse
    limit_name: str
    grace_days: int
    days_open: int


class LimitBreachStatisticsResponse(RegisterBaseModel):
    total: int
    open: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    avg_resolution_days: float
