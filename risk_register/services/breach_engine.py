"""
Breach Engine: indicator measurements and the breach lifecycle.

A measurement runs as one explicit pipeline inside the caller's transaction:

    lock assignment -> resolve thresholds -> classify -> open/update breach
                    -> audit -> check tolerance limits bound to the indicator

Breach state machine:
    active --acknowledge--> investigating --begin remediation--> mitigating
    active | investigating | mitigating --resolve (notes)--> resolved
    any non-terminal --mark false positive--> false_positive

Only one breach per assignment is open at a time; further breaching
measurements update it.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID
import logging

from sqlalchemy import case, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import get_settings
from ..core.principal import Principal
from ..models import (
    AuditAction,
    Breach,
    BreachLevel,
    BreachStatus,
    IndicatorAssignment,
    IndicatorDefinition,
    IndicatorStatus,
    Risk,
    Severity,
    as_utc,
    utcnow,
)
from .audit import AuditEvent, AuditRecorder, field_snapshot
from .errors import (
    ConcurrencyConflict,
    ConfigurationError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from .escalation_engine import EscalationEngine, LimitCheckResult
from .thresholds import (
    EffectiveThresholds,
    PRIORITY_RANK,
    auto_priority,
    breach_percentage,
    breached_threshold,
    classify_level,
    is_same_or_worse,
    resolve_thresholds,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class BreachConfig:
    """Configuration for breach views."""
    urgent_hours: int = 24
    overdue_hours: int = 48
    health_window_days: int = 30
    health_recent_days: int = 7
    frequent_breach_count: int = 3


DEFAULT_CONFIG = BreachConfig()


def config_from_settings() -> BreachConfig:
    settings = get_settings()
    return BreachConfig(
        urgent_hours=settings.breach_urgent_hours,
        overdue_hours=settings.breach_overdue_hours,
        health_window_days=settings.health_window_days,
        health_recent_days=settings.health_recent_days,
        frequent_breach_count=settings.frequent_breach_count,
    )


OPEN_STATUSES = (BreachStatus.ACTIVE, BreachStatus.INVESTIGATING, BreachStatus.MITIGATING)
TERMINAL_STATUSES = (BreachStatus.RESOLVED, BreachStatus.FALSE_POSITIVE)

SNAPSHOT_FIELDS = (
    "status",
    "breach_level",
    "measured_value",
    "threshold_value",
    "breach_percentage",
    "consecutive_breach_count",
    "priority",
)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class MeasurementResult:
    """What a single measurement did."""
    assignment_id: UUID
    level: BreachLevel
    thresholds: EffectiveThresholds
    breach_id: UUID | None = None
    breach_opened: bool = False
    limit_checks: list[LimitCheckResult] = field(default_factory=list)
    configuration_error: ConfigurationError | None = None
    late: bool = False  # Observed before the last measurement

    @property
    def undetermined(self) -> bool:
        return self.level == BreachLevel.UNDETERMINED

    @property
    def limit_breach_ids(self) -> list[UUID]:
        return [c.risk_breach_id for c in self.limit_checks if c.risk_breach_id and c.evaluation.is_breach]


@dataclass
class ActiveBreachView:
    """Open breach with the context a triage list needs."""
    breach: Breach
    indicator_code: str | None
    indicator_name: str | None
    risk_code: str | None
    risk_title: str | None
    hours_active: float
    urgency: str


@dataclass
class IndicatorTrend:
    indicator_id: UUID
    indicator_code: str
    indicator_name: str
    total_breaches: int
    warning_breaches: int
    critical_breaches: int
    resolved_breaches: int
    active_breaches: int
    avg_resolution_hours: float | None
    max_resolution_hours: float | None
    first_breach_date: datetime
    latest_breach_date: datetime
    breaches_per_day: float
    avg_breach_percentage: float | None
    max_breach_percentage: float | None


@dataclass
class IndicatorHealth:
    indicator_id: UUID
    indicator_code: str
    indicator_name: str
    threshold_warning: float | None
    threshold_critical: float | None
    breaches_in_window: int
    breaches_recent: int
    critical_breaches_in_window: int
    latest_breach_date: datetime | None
    highest_measured_value: float | None
    health_status: str  # Breached | Frequent Breaches | Stable | Healthy
    trend: str  # Worsening | Improving | Stable


# =============================================================================
# BREACH ENGINE
# =============================================================================


class BreachEngine:
    """
    Turns indicator measurements into breach records and drives their lifecycle.

    All methods flush but never commit; the request or job session owns the
    transaction, so a failure part way through leaves no partial breach state.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: BreachConfig | None = None,
        escalation: EscalationEngine | None = None,
        audit: AuditRecorder | None = None,
    ):
        self._session = session
        self._config = config or DEFAULT_CONFIG
        self._audit = audit or AuditRecorder(session)
        self._escalation = escalation or EscalationEngine(session, audit=self._audit)

    # =========================================================================
    # MEASUREMENT INGESTION
    # =========================================================================

    async def record_measurement(
        self,
        organization_id: UUID,
        assignment_id: UUID,
        value: float,
        observed_at: datetime | None = None,
        actor_id: UUID | None = None,
    ) -> MeasurementResult:
        """
        Record a measured value for an (indicator, risk) assignment.

        Flow:
        1. Lock the assignment row (single writer per assignment)
        2. Resolve effective thresholds and classify the value
        3. Update current value and breach status on the assignment
        4. Open a breach, update the open one, or reset its streak
        5. Check tolerance limits bound to the same indicator

        An assignment with no resolvable threshold is stored as
        undetermined; the ConfigurationError is returned, not raised, and
        the indicator's tolerance limits are still checked.

        A late value (observed before the assignment's last measurement) is
        classified and reported but changes no live state.
        """
        observed_at = as_utc(observed_at) or utcnow()

        try:
            assignment = await self._lock_assignment(organization_id, assignment_id)
            indicator = assignment.indicator
            if indicator.status == IndicatorStatus.DEPRECATED:
                raise ValidationError(f"Indicator {indicator.code} is deprecated and no longer measured")

            thresholds = resolve_thresholds(assignment, indicator)
            level = classify_level(value, thresholds)
            result = MeasurementResult(assignment_id=assignment.id, level=level, thresholds=thresholds)

            last = as_utc(assignment.last_measured_at)
            if last is not None and observed_at < last:
                result.late = True
                logger.info(
                    f"Late measurement {value} for assignment {assignment.id} observed at "
                    f"{observed_at.isoformat()} (last {last.isoformat()}); classified {level.value} only"
                )
                return result

            previous_status = assignment.breach_status
            assignment.current_value = value
            assignment.last_measured_at = observed_at
            assignment.breach_status = level

            if level == BreachLevel.UNDETERMINED:
                result.configuration_error = ConfigurationError(
                    f"No threshold resolvable for indicator {indicator.code} on assignment {assignment.id}",
                    assignment_id=assignment.id,
                )
                logger.warning(str(result.configuration_error))
            else:
                open_breach = await self._open_breach_for(assignment.id)

                if level == BreachLevel.NORMAL:
                    if open_breach is not None and open_breach.consecutive_breach_count != 1:
                        # Streak broken; the breach itself stays open for its owner
                        open_breach.consecutive_breach_count = 1
                    if open_breach is not None:
                        result.breach_id = open_breach.id
                else:
                    threshold = breached_threshold(level, thresholds)
                    percentage = breach_percentage(value, threshold)

                    if open_breach is None:
                        breach = await self._open_breach(
                            assignment, indicator, level, value, threshold, percentage, observed_at, actor_id
                        )
                        result.breach_opened = True
                    else:
                        breach = await self._update_breach(
                            open_breach, previous_status, level, value, threshold, percentage, observed_at, actor_id
                        )
                    result.breach_id = breach.id

            await self._session.flush()
            await self._audit_status_change(assignment, previous_status, value, actor_id)

            breaching = level in (BreachLevel.WARNING, BreachLevel.CRITICAL)
            result.limit_checks = await self._escalation.evaluate_indicator_limits(
                organization_id=organization_id,
                indicator_id=indicator.id,
                value=value,
                observed_at=observed_at,
                assignment_id=assignment.id,
                risk_id=assignment.risk_id,
                indicator_breach_id=result.breach_id if breaching else None,
                actor_id=actor_id,
            )
            return result

        except StaleDataError as e:
            raise ConcurrencyConflict(
                f"Assignment {assignment_id} was modified by a concurrent measurement"
            ) from e
        except IntegrityError as e:
            raise ConcurrencyConflict(
                f"Concurrent write on assignment {assignment_id}: {e.orig}"
            ) from e

    async def _lock_assignment(self, organization_id: UUID, assignment_id: UUID) -> IndicatorAssignment:
        result = await self._session.execute(
            select(IndicatorAssignment)
            .where(
                IndicatorAssignment.id == assignment_id,
                IndicatorAssignment.organization_id == organization_id,
            )
            .with_for_update(of=IndicatorAssignment)
        )
        assignment = result.unique().scalar_one_or_none()
        if not assignment:
            raise NotFoundError("indicator_assignment", assignment_id)
        return assignment

    async def _open_breach_for(self, assignment_id: UUID) -> Breach | None:
        result = await self._session.execute(
            select(Breach)
            .where(
                Breach.assignment_id == assignment_id,
                Breach.status.in_(OPEN_STATUSES),
            )
            .order_by(Breach.breach_date.desc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _open_breach(
        self,
        assignment: IndicatorAssignment,
        indicator: IndicatorDefinition,
        level: BreachLevel,
        value: float,
        threshold: float,
        percentage: float | None,
        observed_at: datetime,
        actor_id: UUID | None,
    ) -> Breach:
        breach = Breach(
            organization_id=assignment.organization_id,
            assignment_id=assignment.id,
            indicator_id=indicator.id,
            risk_id=assignment.risk_id,
            breach_level=level,
            measured_value=value,
            threshold_value=threshold,
            unit=indicator.unit,
            breach_percentage=percentage,
            consecutive_breach_count=1,
            status=BreachStatus.ACTIVE,
            priority=auto_priority(level, percentage),
            priority_overridden=False,
            breach_date=observed_at,
            last_measured_at=observed_at,
        )
        self._session.add(breach)
        await self._session.flush()

        logger.info(
            f"Opened {level.value} breach {breach.id} for indicator {indicator.code}: "
            f"{value} vs {threshold} ({percentage}%)"
        )
        await self._audit.emit(
            AuditEvent(
                organization_id=assignment.organization_id,
                actor_id=actor_id,
                action=AuditAction.BREACH_OPENED,
                entity_type="breach",
                entity_id=breach.id,
                after=field_snapshot(breach, SNAPSHOT_FIELDS),
                details={"assignment_id": assignment.id, "indicator_code": indicator.code},
            )
        )
        return breach

    async def _update_breach(
        self,
        breach: Breach,
        previous_status: BreachLevel,
        level: BreachLevel,
        value: float,
        threshold: float,
        percentage: float | None,
        observed_at: datetime,
        actor_id: UUID | None,
    ) -> Breach:
        before = field_snapshot(breach, SNAPSHOT_FIELDS)

        streak_continues = previous_status in (BreachLevel.WARNING, BreachLevel.CRITICAL)
        if streak_continues and is_same_or_worse(level, breach.breach_level):
            breach.consecutive_breach_count += 1
        else:
            breach.consecutive_breach_count = 1

        breach.breach_level = level
        breach.measured_value = value
        breach.threshold_value = threshold
        breach.breach_percentage = percentage
        breach.last_measured_at = observed_at
        if not breach.priority_overridden:
            breach.priority = auto_priority(level, percentage)

        await self._session.flush()
        await self._audit.emit(
            AuditEvent(
                organization_id=breach.organization_id,
                actor_id=actor_id,
                action=AuditAction.BREACH_UPDATED,
                entity_type="breach",
                entity_id=breach.id,
                before=before,
                after=field_snapshot(breach, SNAPSHOT_FIELDS),
            )
        )
        return breach

    async def _audit_status_change(
        self,
        assignment: IndicatorAssignment,
        previous_status: BreachLevel,
        value: float,
        actor_id: UUID | None,
    ) -> None:
        if previous_status == assignment.breach_status:
            return
        await self._audit.emit(
            AuditEvent(
                organization_id=assignment.organization_id,
                actor_id=actor_id,
                action=AuditAction.MEASURE,
                entity_type="indicator_assignment",
                entity_id=assignment.id,
                before={"breach_status": previous_status},
                after={"breach_status": assignment.breach_status, "current_value": value},
            )
        )

    # =========================================================================
    # WORKFLOW ACTIONS
    # =========================================================================

    async def acknowledge_breach(
        self, principal: Principal, breach_id: UUID, notes: str | None = None
    ) -> Breach:
        """active -> investigating."""
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, (BreachStatus.ACTIVE,), "acknowledge")

        breach.status = BreachStatus.INVESTIGATING
        breach.acknowledged_by = principal.user_id
        breach.acknowledged_at = utcnow()
        return await self._finish(
            principal, breach, before, AuditAction.ACKNOWLEDGE, details={"notes": notes}
        )

    async def begin_remediation(
        self, principal: Principal, breach_id: UUID, action_plan: str | None = None
    ) -> Breach:
        """active | investigating -> mitigating."""
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(
            breach, (BreachStatus.ACTIVE, BreachStatus.INVESTIGATING), "begin remediation on"
        )

        if breach.acknowledged_at is None:
            breach.acknowledged_by = principal.user_id
            breach.acknowledged_at = utcnow()
        if action_plan:
            breach.action_plan = action_plan
        breach.status = BreachStatus.MITIGATING
        return await self._finish(principal, breach, before, AuditAction.BEGIN_REMEDIATION)

    async def resolve_breach(self, principal: Principal, breach_id: UUID, notes: str) -> Breach:
        """
        Close a breach as resolved.

        Resolution notes are mandatory. The duration is computed once, on
        entry to resolved, and never touched again.
        """
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")

        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, OPEN_STATUSES, "resolve")

        resolved_at = utcnow()
        breach.status = BreachStatus.RESOLVED
        breach.resolved_by = principal.user_id
        breach.resolved_at = resolved_at
        breach.resolution_notes = notes.strip()
        breach.breach_duration_hours = round(
            (resolved_at - as_utc(breach.breach_date)).total_seconds() / 3600, 2
        )
        logger.info(f"Breach {breach.id} resolved after {breach.breach_duration_hours}h")

        return await self._finish(
            principal,
            breach,
            before,
            AuditAction.RESOLVE,
            details={"breach_duration_hours": breach.breach_duration_hours},
        )

    async def mark_false_positive(
        self, principal: Principal, breach_id: UUID, notes: str | None = None
    ) -> Breach:
        """Any non-terminal state -> false_positive."""
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, OPEN_STATUSES, "mark as false positive")

        breach.status = BreachStatus.FALSE_POSITIVE
        breach.resolved_by = principal.user_id
        breach.resolved_at = utcnow()
        breach.resolution_notes = notes
        return await self._finish(principal, breach, before, AuditAction.FALSE_POSITIVE)

    async def set_priority(self, principal: Principal, breach_id: UUID, priority: Severity) -> Breach:
        """Pin a priority; auto-priority stops applying to this breach."""
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, OPEN_STATUSES, "reprioritise")

        breach.priority = priority
        breach.priority_overridden = True
        return await self._finish(principal, breach, before, AuditAction.SET_PRIORITY)

    async def assign_action(
        self,
        principal: Principal,
        breach_id: UUID,
        owner_id: UUID,
        action_plan: str | None = None,
        due_date: datetime | None = None,
    ) -> Breach:
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, ("action_owner", "action_plan", "action_due_date"))
        self._require_status(breach, OPEN_STATUSES, "assign an action to")

        breach.action_owner = owner_id
        if action_plan is not None:
            breach.action_plan = action_plan
        breach.action_due_date = due_date
        await self._session.flush()
        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=AuditAction.ASSIGN_ACTION,
                entity_type="breach",
                entity_id=breach.id,
                before=before,
                after=field_snapshot(breach, ("action_owner", "action_plan", "action_due_date")),
            )
        )
        return breach

    async def record_analysis(
        self,
        principal: Principal,
        breach_id: UUID,
        root_cause_analysis: str | None = None,
        preventive_actions: str | None = None,
    ) -> Breach:
        """Root-cause and preventive-action text; allowed in any state."""
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, ("root_cause_analysis", "preventive_actions"))
        if root_cause_analysis is not None:
            breach.root_cause_analysis = root_cause_analysis
        if preventive_actions is not None:
            breach.preventive_actions = preventive_actions
        await self._session.flush()
        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=AuditAction.UPDATE,
                entity_type="breach",
                entity_id=breach.id,
                before=before,
                after=field_snapshot(breach, ("root_cause_analysis", "preventive_actions")),
            )
        )
        return breach

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_breach(self, organization_id: UUID, breach_id: UUID) -> Breach:
        return await self._get_breach(organization_id, breach_id, lock=False)

    async def list_active_breaches(
        self,
        organization_id: UUID,
        now: datetime | None = None,
    ) -> list[ActiveBreachView]:
        """Open breaches ordered by priority (critical first), then oldest first."""
        now = now or utcnow()
        priority_rank = case(
            *[(Breach.priority == p, rank) for p, rank in PRIORITY_RANK.items()],
            else_=len(PRIORITY_RANK) + 1,
        )
        query = (
            select(
                Breach,
                IndicatorDefinition.code,
                IndicatorDefinition.name,
                Risk.risk_code,
                Risk.title,
            )
            .outerjoin(IndicatorDefinition, Breach.indicator_id == IndicatorDefinition.id)
            .outerjoin(Risk, Breach.risk_id == Risk.id)
            .where(
                Breach.organization_id == organization_id,
                Breach.status.in_(OPEN_STATUSES),
            )
            .order_by(priority_rank, Breach.breach_date.asc())
        )
        result = await self._session.execute(query)

        views = []
        for breach, code, name, risk_code, risk_title in result.all():
            hours = round((now - as_utc(breach.breach_date)).total_seconds() / 3600, 2)
            views.append(
                ActiveBreachView(
                    breach=breach,
                    indicator_code=code,
                    indicator_name=name,
                    risk_code=risk_code,
                    risk_title=risk_title,
                    hours_active=hours,
                    urgency=self._urgency(hours),
                )
            )
        return views

    def _urgency(self, hours_active: float) -> str:
        if hours_active > self._config.overdue_hours:
            return "Overdue"
        if hours_active > self._config.urgent_hours:
            return "Urgent"
        return "Normal"

    async def breach_trends(self, organization_id: UUID) -> list[IndicatorTrend]:
        """Per-indicator breach aggregates, most breached first."""
        result = await self._session.execute(
            select(Breach, IndicatorDefinition)
            .join(IndicatorDefinition, Breach.indicator_id == IndicatorDefinition.id)
            .where(Breach.organization_id == organization_id)
        )

        grouped: dict[UUID, list[Breach]] = defaultdict(list)
        indicators: dict[UUID, IndicatorDefinition] = {}
        for breach, indicator in result.all():
            grouped[indicator.id].append(breach)
            indicators[indicator.id] = indicator

        trends = []
        for indicator_id, breaches in grouped.items():
            indicator = indicators[indicator_id]
            dates = [as_utc(b.breach_date) for b in breaches]
            durations = [b.breach_duration_hours for b in breaches if b.breach_duration_hours is not None]
            percentages = [b.breach_percentage for b in breaches if b.breach_percentage is not None]
            first, latest = min(dates), max(dates)
            span_days = max((latest - first).days, 1)

            trends.append(
                IndicatorTrend(
                    indicator_id=indicator_id,
                    indicator_code=indicator.code,
                    indicator_name=indicator.name,
                    total_breaches=len(breaches),
                    warning_breaches=sum(1 for b in breaches if b.breach_level == BreachLevel.WARNING),
                    critical_breaches=sum(1 for b in breaches if b.breach_level == BreachLevel.CRITICAL),
                    resolved_breaches=sum(1 for b in breaches if b.status == BreachStatus.RESOLVED),
                    active_breaches=sum(1 for b in breaches if b.status in OPEN_STATUSES),
                    avg_resolution_hours=round(sum(durations) / len(durations), 2) if durations else None,
                    max_resolution_hours=max(durations) if durations else None,
                    first_breach_date=first,
                    latest_breach_date=latest,
                    breaches_per_day=round(len(breaches) / span_days, 2),
                    avg_breach_percentage=round(sum(percentages) / len(percentages), 2) if percentages else None,
                    max_breach_percentage=max(percentages) if percentages else None,
                )
            )

        trends.sort(key=lambda t: (-t.total_breaches, t.indicator_code))
        return trends

    async def indicator_health(
        self,
        organization_id: UUID,
        now: datetime | None = None,
    ) -> list[IndicatorHealth]:
        """
        Health of every active catalog indicator from recent breach activity.

        Breached: an open breach in the window. Frequent Breaches: more than
        two breaches in the recent window. Stable: any breach in the window.
        The trend compares the recent window with the one before it.
        """
        now = now or utcnow()
        window_start = now - timedelta(days=self._config.health_window_days)
        recent_start = now - timedelta(days=self._config.health_recent_days)
        prior_start = recent_start - timedelta(days=self._config.health_recent_days)

        indicators = (
            await self._session.execute(
                select(IndicatorDefinition).where(
                    IndicatorDefinition.organization_id == organization_id,
                    IndicatorDefinition.status == IndicatorStatus.ACTIVE,
                )
            )
        ).scalars().all()

        breaches = (
            await self._session.execute(
                select(Breach).where(
                    Breach.organization_id == organization_id,
                    Breach.breach_date >= min(window_start, prior_start),
                )
            )
        ).scalars().all()
        by_indicator: dict[UUID, list[Breach]] = defaultdict(list)
        for breach in breaches:
            by_indicator[breach.indicator_id].append(breach)

        health = []
        for indicator in indicators:
            rows = by_indicator.get(indicator.id, [])
            in_window = [b for b in rows if as_utc(b.breach_date) >= window_start]
            recent = [b for b in rows if as_utc(b.breach_date) >= recent_start]
            prior = [b for b in rows if prior_start <= as_utc(b.breach_date) < recent_start]

            if any(b.status in OPEN_STATUSES for b in in_window):
                status = "Breached"
            elif len(recent) >= self._config.frequent_breach_count:
                status = "Frequent Breaches"
            elif in_window:
                status = "Stable"
            else:
                status = "Healthy"

            if len(recent) > len(prior):
                trend = "Worsening"
            elif len(recent) < len(prior):
                trend = "Improving"
            else:
                trend = "Stable"

            health.append(
                IndicatorHealth(
                    indicator_id=indicator.id,
                    indicator_code=indicator.code,
                    indicator_name=indicator.name,
                    threshold_warning=indicator.threshold_warning,
                    threshold_critical=indicator.threshold_critical,
                    breaches_in_window=len(in_window),
                    breaches_recent=len(recent),
                    critical_breaches_in_window=sum(
                        1 for b in in_window if b.breach_level == BreachLevel.CRITICAL
                    ),
                    latest_breach_date=max((as_utc(b.breach_date) for b in in_window), default=None),
                    highest_measured_value=max((b.measured_value for b in in_window), default=None),
                    health_status=status,
                    trend=trend,
                )
            )

        health.sort(key=lambda h: (-h.breaches_in_window, h.health_status, h.indicator_code))
        return health

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    @staticmethod
    def _require_status(breach: Breach, allowed: Sequence[BreachStatus], verb: str) -> None:
        if breach.status not in allowed:
            raise WorkflowStateError(
                f"Cannot {verb} a breach in status {breach.status.value}",
                current_state=breach.status.value,
                entity_id=breach.id,
            )

    async def _get_breach(self, organization_id: UUID, breach_id: UUID, lock: bool = True) -> Breach:
        query = select(Breach).where(
            Breach.id == breach_id,
            Breach.organization_id == organization_id,
        )
        if lock:
            query = query.with_for_update()
        breach = (await self._session.execute(query)).scalar_one_or_none()
        if not breach:
            raise NotFoundError("breach", breach_id)
        return breach

    async def _finish(
        self,
        principal: Principal,
        breach: Breach,
        before: dict,
        action: AuditAction,
        details: dict | None = None,
    ) -> Breach:
        await self._session.flush()
        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=action,
                entity_type="breach",
                entity_id=breach.id,
                before=before,
                after=field_snapshot(breach, SNAPSHOT_FIELDS),
                details=details or {},
            )
        )
        return breach
