"""SQLAlchemy ORM Models for the Risk Register.

Organization and user identities are owned by the identity service, so they
appear here as plain UUID columns rather than foreign keys.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDMixin, utcnow


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ENUMS
# =============================================================================


class RiskStatus(str, PyEnum):
    IDENTIFIED = "IDENTIFIED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    MONITORING = "MONITORING"
    CLOSED = "CLOSED"


class IndicatorType(str, PyEnum):
    """KRI tracks a risk cause, KCI tracks a control or impact."""
    KRI = "KRI"
    KCI = "KCI"


class MeasurementFrequency(str, PyEnum):
    REAL_TIME = "real-time"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class IndicatorStatus(str, PyEnum):
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    PENDING = "pending"


class Direction(str, PyEnum):
    """Direction-of-goodness for an indicator."""
    LOWER_IS_BETTER = "lower_is_better"  # breaches when value rises to a threshold
    HIGHER_IS_BETTER = "higher_is_better"  # breaches when value falls to a threshold


class BreachLevel(str, PyEnum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    UNDETERMINED = "undetermined"  # No threshold could be resolved


class BreachStatus(str, PyEnum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    MITIGATING = "mitigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class Severity(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LimitDirection(str, PyEnum):
    ABOVE = "above"
    BELOW = "below"
    BETWEEN = "between"


class LimitBreachKind(str, PyEnum):
    NONE = "none"
    SOFT = "soft"
    HARD = "hard"


class LimitBreachStatus(str, PyEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    REMEDIATION_IN_PROGRESS = "remediation_in_progress"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ChangeType(str, PyEnum):
    PERIOD_COMMIT = "PERIOD_COMMIT"


class AuditAction(str, PyEnum):
    CREATE = "create"
    UPDATE = "update"
    MEASURE = "measure"
    BREACH_OPENED = "breach_opened"
    BREACH_UPDATED = "breach_updated"
    ACKNOWLEDGE = "acknowledge"
    BEGIN_REMEDIATION = "begin_remediation"
    RESOLVE = "resolve"
    FALSE_POSITIVE = "false_positive"
    SET_PRIORITY = "set_priority"
    ASSIGN_ACTION = "assign_action"
    LIMIT_BREACH = "limit_breach"
    ESCALATE = "escalate"
    REQUEST_EXCEPTION = "request_exception"
    APPROVE_EXCEPTION = "approve_exception"
    REJECT_EXCEPTION = "reject_exception"
    EXPIRE_EXCEPTION = "expire_exception"
    LINK = "link"
    UNLINK = "unlink"
    SET_PRIMARY = "set_primary"
    INVARIANT_REPAIR = "invariant_repair"
    COMMIT_PERIOD = "commit_period"


# =============================================================================
# RISK REGISTER
# =============================================================================


class Risk(Base, UUIDMixin, TimestampMixin):
    """A catalogued risk."""

    __tablename__ = "risks"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    risk_code: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100))
    division: Mapped[str | None] = mapped_column(String(100))
    department: Mapped[str | None] = mapped_column(String(100))
    owner: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[RiskStatus] = mapped_column(
        _enum(RiskStatus, "risk_status"), default=RiskStatus.IDENTIFIED, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    likelihood_inherent: Mapped[int] = mapped_column(Integer, nullable=False)
    impact_inherent: Mapped[int] = mapped_column(Integer, nullable=False)
    likelihood_residual: Mapped[int | None] = mapped_column(Integer)
    impact_residual: Mapped[int | None] = mapped_column(Integer)

    # Relationships
    root_causes: Mapped[list["RiskRootCause"]] = relationship(
        back_populates="risk", cascade="all, delete-orphan", passive_deletes=True
    )
    impacts: Mapped[list["RiskImpact"]] = relationship(
        back_populates="risk", cascade="all, delete-orphan", passive_deletes=True
    )
    controls: Mapped[list["RiskControl"]] = relationship(
        back_populates="risk", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "risk_code", name="uq_risks_org_code"),
        CheckConstraint("likelihood_inherent BETWEEN 1 AND 5", name="likelihood_inherent_range"),
        CheckConstraint("impact_inherent BETWEEN 1 AND 5", name="impact_inherent_range"),
        Index("idx_risks_org_status", "organization_id", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.is_active and self.status != RiskStatus.CLOSED

    @property
    def score_inherent(self) -> int:
        return self.likelihood_inherent * self.impact_inherent

    @property
    def score_residual(self) -> int | None:
        if self.likelihood_residual is None or self.impact_residual is None:
            return None
        return self.likelihood_residual * self.impact_residual


class RootCause(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "root_causes"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100))

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_root_causes_org_code"),
    )


class Impact(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "impacts"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100))

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_impacts_org_code"),
    )


class Control(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "controls"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    design_effectiveness: Mapped[int | None] = mapped_column(Integer)
    operating_effectiveness: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_controls_org_code"),
    )


class RiskRootCause(Base, UUIDMixin, TimestampMixin):
    """Risk to root cause link. Exactly one row per risk is primary."""

    __tablename__ = "risk_root_causes"

    risk_id: Mapped[UUID] = mapped_column(
        ForeignKey("risks.id", ondelete="CASCADE"), nullable=False
    )
    root_cause_id: Mapped[UUID] = mapped_column(
        ForeignKey("root_causes.id", ondelete="CASCADE"), nullable=False
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    contribution_percentage: Mapped[int | None] = mapped_column(Integer)
    rationale: Mapped[str | None] = mapped_column(Text)
    primary_marked_at: Mapped[datetime | None] = mapped_column()

    # Relationships
    risk: Mapped["Risk"] = relationship(back_populates="root_causes")
    root_cause: Mapped["RootCause"] = relationship()

    __table_args__ = (
        UniqueConstraint("risk_id", "root_cause_id", name="uq_risk_root_causes_pair"),
        CheckConstraint(
            "contribution_percentage IS NULL OR contribution_percentage BETWEEN 1 AND 100",
            name="contribution_range",
        ),
        Index("idx_risk_root_causes_primary", "risk_id", "is_primary"),
    )


class RiskImpact(Base, UUIDMixin, TimestampMixin):
    """Risk to impact link. Exactly one row per risk is primary."""

    __tablename__ = "risk_impacts"

    risk_id: Mapped[UUID] = mapped_column(
        ForeignKey("risks.id", ondelete="CASCADE"), nullable=False
    )
    impact_id: Mapped[UUID] = mapped_column(
        ForeignKey("impacts.id", ondelete="CASCADE"), nullable=False
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    severity_percentage: Mapped[int | None] = mapped_column(Integer)
    rationale: Mapped[str | None] = mapped_column(Text)
    primary_marked_at: Mapped[datetime | None] = mapped_column()

    # Relationships
    risk: Mapped["Risk"] = relationship(back_populates="impacts")
    impact: Mapped["Impact"] = relationship()

    __table_args__ = (
        UniqueConstraint("risk_id", "impact_id", name="uq_risk_impacts_pair"),
        CheckConstraint(
            "severity_percentage IS NULL OR severity_percentage BETWEEN 1 AND 100",
            name="severity_range",
        ),
        Index("idx_risk_impacts_primary", "risk_id", "is_primary"),
    )


class RiskControl(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "risk_controls"

    risk_id: Mapped[UUID] = mapped_column(
        ForeignKey("risks.id", ondelete="CASCADE"), nullable=False
    )
    control_id: Mapped[UUID] = mapped_column(
        ForeignKey("controls.id", ondelete="CASCADE"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)

    # Relationships
    risk: Mapped["Risk"] = relationship(back_populates="controls")
    control: Mapped["Control"] = relationship()

    __table_args__ = (
        UniqueConstraint("risk_id", "control_id", name="uq_risk_controls_pair"),
    )


# =============================================================================
# INDICATORS
# =============================================================================


class IndicatorDefinition(Base, UUIDMixin, TimestampMixin):
    """Organization catalog entry for a KRI or KCI."""

    __tablename__ = "indicator_definitions"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    indicator_type: Mapped[IndicatorType] = mapped_column(
        _enum(IndicatorType, "indicator_type"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    unit: Mapped[str | None] = mapped_column(String(50))
    frequency: Mapped[MeasurementFrequency | None] = mapped_column(
        _enum(MeasurementFrequency, "measurement_frequency")
    )
    threshold_warning: Mapped[float | None] = mapped_column(Float)
    threshold_critical: Mapped[float | None] = mapped_column(Float)
    direction: Mapped[Direction] = mapped_column(
        _enum(Direction, "indicator_direction"),
        default=Direction.LOWER_IS_BETTER,
        nullable=False,
    )
    target_value: Mapped[float | None] = mapped_column(Float)
    data_source: Mapped[str | None] = mapped_column(String(255))
    calculation_method: Mapped[str | None] = mapped_column(Text)
    status: Mapped[IndicatorStatus] = mapped_column(
        _enum(IndicatorStatus, "indicator_status"),
        default=IndicatorStatus.ACTIVE,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_indicator_definitions_org_code"),
    )


class IndicatorAssignment(Base, UUIDMixin, TimestampMixin):
    """Binds a catalog indicator to a risk, with optional threshold overrides."""

    __tablename__ = "indicator_assignments"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    risk_id: Mapped[UUID] = mapped_column(
        ForeignKey("risks.id", ondelete="CASCADE"), nullable=False
    )
    indicator_id: Mapped[UUID] = mapped_column(
        ForeignKey("indicator_definitions.id", ondelete="CASCADE"), nullable=False
    )
    warning_override: Mapped[float | None] = mapped_column(Float)
    critical_override: Mapped[float | None] = mapped_column(Float)
    current_value: Mapped[float | None] = mapped_column(Float)
    last_measured_at: Mapped[datetime | None] = mapped_column()
    breach_status: Mapped[BreachLevel] = mapped_column(
        _enum(BreachLevel, "breach_level"), default=BreachLevel.NORMAL, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    assigned_by: Mapped[UUID | None] = mapped_column()
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    indicator: Mapped["IndicatorDefinition"] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("risk_id", "indicator_id", name="uq_indicator_assignments_pair"),
        Index("idx_indicator_assignments_org", "organization_id"),
    )

    __mapper_args__ = {"version_id_col": version}


class Breach(Base, UUIDMixin, TimestampMixin):
    """One detected excursion of an assigned indicator past its thresholds."""

    __tablename__ = "indicator_breaches"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    assignment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("indicator_assignments.id", ondelete="SET NULL")
    )
    indicator_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("indicator_definitions.id", ondelete="SET NULL")
    )
    risk_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("risks.id", ondelete="SET NULL")
    )
    breach_level: Mapped[BreachLevel] = mapped_column(
        _enum(BreachLevel, "breach_level"), nullable=False
    )
    measured_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(50))
    breach_percentage: Mapped[float | None] = mapped_column(Float)
    consecutive_breach_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[BreachStatus] = mapped_column(
        _enum(BreachStatus, "breach_status"), default=BreachStatus.ACTIVE, nullable=False
    )
    priority: Mapped[Severity] = mapped_column(
        _enum(Severity, "severity"), default=Severity.LOW, nullable=False
    )
    priority_overridden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Ownership and analysis
    action_owner: Mapped[UUID | None] = mapped_column()
    action_plan: Mapped[str | None] = mapped_column(Text)
    action_due_date: Mapped[datetime | None] = mapped_column()
    root_cause_analysis: Mapped[str | None] = mapped_column(Text)
    preventive_actions: Mapped[str | None] = mapped_column(Text)

    # Lifecycle timestamps
    breach_date: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    last_measured_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    acknowledged_by: Mapped[UUID | None] = mapped_column()
    acknowledged_at: Mapped[datetime | None] = mapped_column()
    resolved_by: Mapped[UUID | None] = mapped_column()
    resolved_at: Mapped[datetime | None] = mapped_column()
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    breach_duration_hours: Mapped[float | None] = mapped_column(Float)

    __table_args__ = (
        Index("idx_indicator_breaches_org_status", "organization_id", "status"),
        Index("idx_indicator_breaches_assignment", "assignment_id", "status"),
        Index("idx_indicator_breaches_indicator_date", "indicator_id", "breach_date"),
    )

    @property
    def is_open(self) -> bool:
        return self.status not in (BreachStatus.RESOLVED, BreachStatus.FALSE_POSITIVE)


# =============================================================================
# RISK APPETITE: TOLERANCE LIMITS
# =============================================================================


class ToleranceLimit(Base, UUIDMixin, TimestampMixin):
    """Organization level soft/hard bound on an appetite tolerance metric."""

    __tablename__ = "tolerance_limits"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tolerance_metric: Mapped[str] = mapped_column(String(255), nullable=False)
    indicator_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("indicator_definitions.id", ondelete="SET NULL")
    )
    direction: Mapped[LimitDirection] = mapped_column(
        _enum(LimitDirection, "limit_direction"), default=LimitDirection.ABOVE, nullable=False
    )
    soft_limit: Mapped[float | None] = mapped_column(Float)
    hard_limit: Mapped[float | None] = mapped_column(Float)
    # Lower bounds, only used with direction=between
    lower_soft_limit: Mapped[float | None] = mapped_column(Float)
    lower_hard_limit: Mapped[float | None] = mapped_column(Float)
    soft_notify_roles: Mapped[list[str]] = mapped_column(JSONType, default=list)
    hard_notify_roles: Mapped[list[str]] = mapped_column(JSONType, default=list)
    board_escalation_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    regulator_notification_required: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    exception_grace_days: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("idx_tolerance_limits_indicator", "indicator_id"),
    )


class RiskBreach(Base, UUIDMixin, TimestampMixin):
    """Breach of an appetite tolerance limit, with the exception workflow."""

    __tablename__ = "risk_breaches"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    limit_id: Mapped[UUID] = mapped_column(
        ForeignKey("tolerance_limits.id", ondelete="CASCADE"), nullable=False
    )
    indicator_breach_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("indicator_breaches.id", ondelete="SET NULL")
    )
    assignment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("indicator_assignments.id", ondelete="SET NULL")
    )
    risk_id: Mapped[UUID | None] = mapped_column(ForeignKey("risks.id", ondelete="SET NULL"))
    breach_type: Mapped[LimitBreachKind] = mapped_column(
        _enum(LimitBreachKind, "limit_breach_kind"), nullable=False
    )
    measured_value: Mapped[float] = mapped_column(Float, nullable=False)
    limit_value: Mapped[float] = mapped_column(Float, nullable=False)
    variance_amount: Mapped[float] = mapped_column(Float, nullable=False)
    variance_percentage: Mapped[float | None] = mapped_column(Float)
    severity: Mapped[Severity] = mapped_column(_enum(Severity, "severity"), nullable=False)
    status: Mapped[LimitBreachStatus] = mapped_column(
        _enum(LimitBreachStatus, "limit_breach_status"),
        default=LimitBreachStatus.OPEN,
        nullable=False,
    )
    breach_date: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    last_measured_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    latest_value: Mapped[float | None] = mapped_column(Float)
    within_limits_at: Mapped[datetime | None] = mapped_column()  # set while remediated
    notified_roles: Mapped[list[str]] = mapped_column(JSONType, default=list)

    # Exception (justification) workflow
    business_justification: Mapped[str | None] = mapped_column(Text)
    compensating_controls: Mapped[str | None] = mapped_column(Text)
    exception_requested_by: Mapped[UUID | None] = mapped_column()
    exception_requested_at: Mapped[datetime | None] = mapped_column()
    valid_until: Mapped[datetime | None] = mapped_column()
    approval_decided_by: Mapped[UUID | None] = mapped_column()
    approval_decided_at: Mapped[datetime | None] = mapped_column()
    approval_rationale: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    expired_exception_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Escalation latches: set once, never cleared
    escalated_to_cro: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalated_to_cro_at: Mapped[datetime | None] = mapped_column()
    escalated_to_board: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalated_to_board_at: Mapped[datetime | None] = mapped_column()
    regulator_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    regulator_notified_at: Mapped[datetime | None] = mapped_column()

    acknowledged_by: Mapped[UUID | None] = mapped_column()
    acknowledged_at: Mapped[datetime | None] = mapped_column()
    resolved_by: Mapped[UUID | None] = mapped_column()
    resolved_at: Mapped[datetime | None] = mapped_column()
    resolution_notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_risk_breaches_org_status", "organization_id", "status"),
        Index("idx_risk_breaches_limit_status", "limit_id", "status"),
        Index("idx_risk_breaches_valid_until", "valid_until"),
    )

    @property
    def is_open(self) -> bool:
        return self.status not in (LimitBreachStatus.RESOLVED, LimitBreachStatus.CLOSED)


# =============================================================================
# PERIODS & HISTORY
# =============================================================================


class ActivePeriod(Base):
    """The reporting quarter an organization is currently working in."""

    __tablename__ = "active_periods"

    organization_id: Mapped[UUID] = mapped_column(primary_key=True)
    current_period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_period_quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_period_year: Mapped[int | None] = mapped_column(Integer)
    previous_period_quarter: Mapped[int | None] = mapped_column(Integer)
    period_started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("current_period_quarter BETWEEN 1 AND 4", name="current_quarter_range"),
    )


class PeriodCommit(Base, UUIDMixin):
    """Ledger row proving a period has been frozen for an organization."""

    __tablename__ = "period_commits"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    committed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    committed_by: Mapped[UUID | None] = mapped_column()
    risks_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_risks_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    closed_risks_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    controls_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    kris_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    repairs_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "period_year", "period_quarter", name="uq_period_commits_period"
        ),
        CheckConstraint("period_quarter BETWEEN 1 AND 4", name="quarter_range"),
    )


class RiskHistory(Base, UUIDMixin):
    """Immutable as-of copy of a risk at a committed period."""

    __tablename__ = "risk_history"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    risk_id: Mapped[UUID] = mapped_column(ForeignKey("risks.id"), nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(
        String(50), default=ChangeType.PERIOD_COMMIT.value, nullable=False
    )
    committed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    committed_by: Mapped[UUID | None] = mapped_column()

    # Flattened key fields
    risk_code: Mapped[str] = mapped_column(String(50), nullable=False)
    risk_title: Mapped[str] = mapped_column(String(500), nullable=False)
    risk_description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100))
    division: Mapped[str | None] = mapped_column(String(100))
    department: Mapped[str | None] = mapped_column(String(100))
    owner: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    likelihood_inherent: Mapped[int] = mapped_column(Integer, nullable=False)
    impact_inherent: Mapped[int] = mapped_column(Integer, nullable=False)
    score_inherent: Mapped[int] = mapped_column(Integer, nullable=False)
    likelihood_residual: Mapped[int | None] = mapped_column(Integer)
    impact_residual: Mapped[int | None] = mapped_column(Integer)
    score_residual: Mapped[int | None] = mapped_column(Integer)

    snapshot_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    __table_args__ = (
        UniqueConstraint(
            "risk_id",
            "period_year",
            "period_quarter",
            "change_type",
            name="uq_risk_history_period",
        ),
        Index("idx_risk_history_org_period", "organization_id", "period_year", "period_quarter"),
    )


# =============================================================================
# AUDIT LOG
# =============================================================================


class AuditLog(Base, UUIDMixin):
    """Append-only audit trail, hash chained per organization."""

    __tablename__ = "audit_log"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column()  # None = system
    action: Mapped[AuditAction] = mapped_column(_enum(AuditAction, "audit_action"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    before: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    after: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64))
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "sequence", name="uq_audit_log_org_sequence"),
        Index("idx_audit_log_org_time", "organization_id", "created_at"),
        Index("idx_audit_log_entity", "entity_type", "entity_id"),
        Index("idx_audit_log_action", "action", "created_at"),
    )
