"""Pydantic schemas for the risk, cause, impact, control and indicator catalogs."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from ..models import (
    BreachLevel,
    Direction,
    IndicatorStatus,
    IndicatorType,
    LimitDirection,
    MeasurementFrequency,
    RiskStatus,
)
from .base import RegisterBaseModel, TimestampMixin


# =============================================================================
# RISKS
# =============================================================================


class RiskCreate(RegisterBaseModel):
    """Schema for cataloguing a new risk."""

    risk_code: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)
    division: str | None = Field(default=None, max_length=100)
    department: str | None = Field(default=None, max_length=100)
    owner: str | None = Field(default=None, max_length=255)
    status: RiskStatus = RiskStatus.IDENTIFIED
    likelihood_inherent: int = Field(..., ge=1, le=5)
    impact_inherent: int = Field(..., ge=1, le=5)
    likelihood_residual: int | None = Field(default=None, ge=1, le=5)
    impact_residual: int | None = Field(default=None, ge=1, le=5)

    @field_validator("risk_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class RiskUpdate(RegisterBaseModel):
    """Partial update; only supplied fields change."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    owner: str | None = Field(default=None, max_length=255)
    status: RiskStatus | None = None
    is_active: bool | None = None
    likelihood_inherent: int | None = Field(default=None, ge=1, le=5)
    impact_inherent: int | None = Field(default=None, ge=1, le=5)
    likelihood_residual: int | None = Field(default=None, ge=1, le=5)
    impact_residual: int | None = Field(default=None, ge=1, le=5)


class RiskResponse(TimestampMixin, RegisterBaseModel):
    id: UUID
    risk_code: str
    title: str
    description: str | None = None
    category: str | None = None
    division: str | None = None
    department: str | None = None
    owner: str | None = None
    status: RiskStatus
    is_active: bool
    likelihood_inherent: int
    impact_inherent: int
    score_inherent: int
    likelihood_residual: int | None = None
    impact_residual: int | None = None
    score_residual: int | None = None


# =============================================================================
# ROOT CAUSES / IMPACTS / CONTROLS
# =============================================================================


class CatalogEntryCreate(RegisterBaseModel):
    """Root cause or impact catalog entry."""

    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)


class ControlCreate(RegisterBaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    design_effectiveness: int | None = Field(default=None, ge=1, le=5)
    operating_effectiveness: int | None = Field(default=None, ge=1, le=5)


class CatalogEntryResponse(RegisterBaseModel):
    id: UUID
    code: str
    name: str
    description: str | None = None


class ControlResponse(CatalogEntryResponse):
    design_effectiveness: int | None = None
    operating_effectiveness: int | None = None


class RootCauseLinkCreate(RegisterBaseModel):
    root_cause_id: UUID
    is_primary: bool = False
    contribution_percentage: int | None = Field(default=None, ge=1, le=100)
    rationale: str | None = None


class ImpactLinkCreate(RegisterBaseModel):
    impact_id: UUID
    is_primary: bool = False
    severity_percentage: int | None = Field(default=None, ge=1, le=100)
    rationale: str | None = None


class ControlLinkCreate(RegisterBaseModel):
    control_id: UUID
    notes: str | None = None


class RootCauseLinkResponse(RegisterBaseModel):
    id: UUID
    risk_id: UUID
    root_cause_id: UUID
    is_primary: bool
    contribution_percentage: int | None = None
    rationale: str | None = None
    primary_marked_at: datetime | None = None


class ImpactLinkResponse(RegisterBaseModel):
    id: UUID
    risk_id: UUID
    impact_id: UUID
    is_primary: bool
    severity_percentage: int | None = None
    rationale: str | None = None
    primary_marked_at: datetime | None = None


class ControlLinkResponse(RegisterBaseModel):
    id: UUID
    risk_id: UUID
    control_id: UUID
    notes: str | None = None


# =============================================================================
# INDICATORS
# =============================================================================


class IndicatorCreate(RegisterBaseModel):
    """Schema for a KRI/KCI catalog definition."""

    code: str = Field(..., min_length=1, max_length=50)
    indicator_type: IndicatorType
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    unit: str | None = Field(default=None, max_length=50)
    frequency: MeasurementFrequency | None = None
    threshold_warning: float | None = None
    threshold_critical: float | None = None
    direction: Direction = Direction.LOWER_IS_BETTER
    target_value: float | None = None
    data_source: str | None = Field(default=None, max_length=255)
    calculation_method: str | None = None

    @model_validator(mode="after")
    def check_threshold_order(self) -> "IndicatorCreate":
        if self.threshold_warning is None or self.threshold_critical is None:
            return self
        if Direction(self.direction) == Direction.HIGHER_IS_BETTER:
            inverted = self.threshold_critical > self.threshold_warning
        else:
            inverted = self.threshold_critical < self.threshold_warning
        if inverted:
            raise ValueError(
                "threshold_critical must be at least as extreme as threshold_warning "
                f"for direction '{Direction(self.direction).value}'"
            )
        return self


class IndicatorThresholdsUpdate(RegisterBaseModel):
    """Catalog threshold edit. Existing breach rows keep their copied thresholds."""

    threshold_warning: float | None = None
    threshold_critical: float | None = None
    direction: Direction | None = None
    target_value: float | None = None
    status: IndicatorStatus | None = None


class IndicatorResponse(TimestampMixin, RegisterBaseModel):
    id: UUID
    code: str
    indicator_type: IndicatorType
    name: str
    description: str | None = None
    unit: str | None = None
    frequency: MeasurementFrequency | None = None
    threshold_warning: float | None = None
    threshold_critical: float | None = None
    direction: Direction
    target_value: float | None = None
    status: IndicatorStatus


class AssignmentCreate(RegisterBaseModel):
    risk_id: UUID
    indicator_id: UUID
    warning_override: float | None = None
    critical_override: float | None = None
    notes: str | None = None


class AssignmentOverridesUpdate(RegisterBaseModel):
    """Replace both overrides; ``None`` falls back to the catalog default."""

    warning_override: float | None = None
    critical_override: float | None = None


class AssignmentResponse(RegisterBaseModel):
    id: UUID
    risk_id: UUID
    indicator_id: UUID
    warning_override: float | None = None
    critical_override: float | None = None
    current_value: float | None = None
    last_measured_at: datetime | None = None
    breach_status: BreachLevel
    version: int


# =============================================================================
# TOLERANCE LIMITS
# =============================================================================


class ToleranceLimitCreate(RegisterBaseModel):
    """Organization level soft/hard limit on an appetite metric."""

    name: str = Field(..., min_length=1, max_length=255)
    tolerance_metric: str = Field(..., min_length=1, max_length=255)
    indicator_id: UUID | None = None
    direction: LimitDirection = LimitDirection.ABOVE
    soft_limit: float | None = None
    hard_limit: float | None = None
    lower_soft_limit: float | None = None
    lower_hard_limit: float | None = None
    soft_notify_roles: list[str] = Field(default_factory=list)
    hard_notify_roles: list[str] = Field(default_factory=list)
    board_escalation_required: bool = False
    regulator_notification_required: bool = False
    exception_grace_days: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ToleranceLimitCreate":
        if self.soft_limit is None and self.hard_limit is None:
            raise ValueError("At least one of soft_limit or hard_limit is required")
        if self.soft_limit is not None and self.hard_limit is not None:
            direction = LimitDirection(self.direction)
            if direction in (LimitDirection.ABOVE, LimitDirection.BETWEEN) and self.soft_limit > self.hard_limit:
                raise ValueError("soft_limit must not exceed hard_limit")
            if direction == LimitDirection.BELOW and self.soft_limit < self.hard_limit:
                raise ValueError("soft_limit must not be below hard_limit for direction 'below'")
        return self


class ToleranceLimitResponse(RegisterBaseModel):
    id: UUID
    name: str
    tolerance_metric: str
    indicator_id: UUID | None = None
    direction: LimitDirection
    soft_limit: float | None = None
    hard_limit: float | None = None
    lower_soft_limit: float | None = None
    lower_hard_limit: float | None = None
    soft_notify_roles: list[str] = []
    hard_notify_roles: list[str] = []
    board_escalation_required: bool
    regulator_notification_required: bool
    exception_grace_days: int | None = None
    is_active: bool
