"""
Period Snapshotter: freezes an organization's risks into immutable history.

Committing a quarter writes one RiskHistory row per active risk, carrying
flattened key fields plus an as-of copy of its linked causes, impacts and
controls, then writes the PeriodCommit ledger row and advances the
organization's active period. The whole commit is one unit of work in the
caller's transaction.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID
import logging
import re

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.principal import Principal
from ..models import (
    ActivePeriod,
    AuditAction,
    ChangeType,
    Control,
    IndicatorDefinition,
    IndicatorType,
    PeriodCommit,
    Risk,
    RiskControl,
    RiskHistory,
    RiskImpact,
    RiskRootCause,
    utcnow,
)
from .audit import AuditEvent, AuditRecorder
from .errors import (
    ConcurrencyConflict,
    DuplicatePeriodCommit,
    NotFoundError,
    ValidationError,
)
from .primary_invariant import InvariantRepair, PrimaryInvariantEnforcer

logger = logging.getLogger(__name__)


# =============================================================================
# PERIODS
# =============================================================================


@dataclass(frozen=True, order=True)
class Period:
    """A reporting quarter."""
    year: int
    quarter: int

    def __str__(self) -> str:
        return format_period(self)

    def next(self) -> "Period":
        if self.quarter == 4:
            return Period(self.year + 1, 1)
        return Period(self.year, self.quarter + 1)


_PERIOD_RE = re.compile(r"^Q([1-4])\s+(\d{4})$")


def format_period(period: Period) -> str:
    return f"Q{period.quarter} {period.year}"


def next_period(period: Period) -> Period:
    return period.next()


def parse_period(value: str) -> Period:
    match = _PERIOD_RE.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid period '{value}', expected e.g. 'Q1 2025'")
    return Period(year=int(match.group(2)), quarter=int(match.group(1)))


def current_calendar_period(now: datetime | None = None) -> Period:
    now = now or utcnow()
    return Period(year=now.year, quarter=(now.month - 1) // 3 + 1)


def validate_period(year: int, quarter: int) -> Period:
    if quarter not in (1, 2, 3, 4):
        raise ValidationError("Quarter must be between 1 and 4")
    if not 2000 <= year <= 2100:
        raise ValidationError("Year must be between 2000 and 2100")
    return Period(year, quarter)


def score_level(score: int) -> str:
    if score >= 15:
        return "Extreme"
    if score >= 10:
        return "High"
    if score >= 5:
        return "Medium"
    return "Low"


# =============================================================================
# SNAPSHOT VALUES
# =============================================================================


@dataclass(frozen=True)
class LinkedEntitySnapshot:
    """As-of copy of one linked cause, impact or control."""
    id: str
    code: str
    name: str
    is_primary: bool | None = None
    weight: int | None = None
    rationale: str | None = None
    design_effectiveness: int | None = None
    operating_effectiveness: int | None = None


@dataclass(frozen=True)
class RiskSnapshot:
    """
    Value captured at commit time.

    Holds copies, never references, so history cannot drift when the live
    risk or its linked rows change later.
    """
    risk_id: str
    risk_code: str
    title: str
    description: str | None
    category: str | None
    division: str | None
    department: str | None
    owner: str | None
    status: str
    is_active: bool
    likelihood_inherent: int
    impact_inherent: int
    score_inherent: int
    likelihood_residual: int | None
    impact_residual: int | None
    score_residual: int | None
    root_causes: tuple[LinkedEntitySnapshot, ...] = ()
    impacts: tuple[LinkedEntitySnapshot, ...] = ()
    controls: tuple[LinkedEntitySnapshot, ...] = ()

    @classmethod
    def capture(cls, risk: Risk) -> "RiskSnapshot":
        return cls(
            risk_id=str(risk.id),
            risk_code=risk.risk_code,
            title=risk.title,
            description=risk.description,
            category=risk.category,
            division=risk.division,
            department=risk.department,
            owner=risk.owner,
            status=risk.status.value,
            is_active=risk.is_active,
            likelihood_inherent=risk.likelihood_inherent,
            impact_inherent=risk.impact_inherent,
            score_inherent=risk.score_inherent,
            likelihood_residual=risk.likelihood_residual,
            impact_residual=risk.impact_residual,
            score_residual=risk.score_residual,
            root_causes=tuple(_cause_snapshot(link) for link in _sorted_links(risk.root_causes)),
            impacts=tuple(_impact_snapshot(link) for link in _sorted_links(risk.impacts)),
            controls=tuple(
                _control_snapshot(link)
                for link in sorted(risk.controls, key=lambda l: l.control.code)
            ),
        )

    @property
    def primary_root_cause(self) -> LinkedEntitySnapshot | None:
        return next((c for c in self.root_causes if c.is_primary), None)

    @property
    def primary_impact(self) -> LinkedEntitySnapshot | None:
        return next((i for i in self.impacts if i.is_primary), None)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["controls_count"] = len(self.controls)
        primary_cause = self.primary_root_cause
        primary_impact = self.primary_impact
        data["primary_root_cause_id"] = primary_cause.id if primary_cause else None
        data["primary_impact_id"] = primary_impact.id if primary_impact else None
        return data


def _sorted_links(links: Sequence[Any]) -> list[Any]:
    # Primary first, then by id for a stable order
    return sorted(links, key=lambda l: (not l.is_primary, str(l.id)))


def _cause_snapshot(link: RiskRootCause) -> LinkedEntitySnapshot:
    return LinkedEntitySnapshot(
        id=str(link.root_cause_id),
        code=link.root_cause.code,
        name=link.root_cause.name,
        is_primary=link.is_primary,
        weight=link.contribution_percentage,
        rationale=link.rationale,
    )


def _impact_snapshot(link: RiskImpact) -> LinkedEntitySnapshot:
    return LinkedEntitySnapshot(
        id=str(link.impact_id),
        code=link.impact.code,
        name=link.impact.name,
        is_primary=link.is_primary,
        weight=link.severity_percentage,
        rationale=link.rationale,
    )


def _control_snapshot(link: RiskControl) -> LinkedEntitySnapshot:
    return LinkedEntitySnapshot(
        id=str(link.control_id),
        code=link.control.code,
        name=link.control.name,
        design_effectiveness=link.control.design_effectiveness,
        operating_effectiveness=link.control.operating_effectiveness,
    )


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class PeriodCommitResult:
    commit: PeriodCommit
    period: Period
    next_period: Period
    risks_snapshotted: int
    active_risks_count: int
    closed_risks_count: int
    repairs: list[InvariantRepair] = field(default_factory=list)


@dataclass
class RiskChange:
    risk_code: str
    risk_title: str
    likelihood_change: int
    impact_change: int
    score_change: int
    old_status: str
    new_status: str


@dataclass
class PeriodComparison:
    period1: Period
    period2: Period
    risk_count_period1: int
    risk_count_period2: int
    risk_count_change: int
    new_risks: list[str]
    closed_risks: list[str]
    risk_changes: list[RiskChange]
    score_changes: dict[str, float]


@dataclass
class PeriodTrend:
    period: Period
    snapshot_date: datetime
    total_risks: int
    by_status: dict[str, int]
    by_level: dict[str, int]
    avg_inherent_score: float
    avg_residual_score: float


# =============================================================================
# PERIOD SNAPSHOTTER
# =============================================================================


class PeriodSnapshotter:
    """Commits quarters and answers questions about committed history."""

    def __init__(
        self,
        session: AsyncSession,
        enforcer: PrimaryInvariantEnforcer | None = None,
        audit: AuditRecorder | None = None,
    ):
        self._session = session
        self._audit = audit or AuditRecorder(session)
        self._enforcer = enforcer or PrimaryInvariantEnforcer(session, audit=self._audit)

    # =========================================================================
    # ACTIVE PERIOD
    # =========================================================================

    async def get_active_period(self, organization_id: UUID) -> ActivePeriod:
        """The organization's working quarter, starting at the calendar quarter."""
        active = await self._session.get(ActivePeriod, organization_id)
        if active is None:
            active = await self._start_active_period(organization_id)
        return active

    async def _start_active_period(self, organization_id: UUID) -> ActivePeriod:
        period = current_calendar_period()
        active = ActivePeriod(
            organization_id=organization_id,
            current_period_year=period.year,
            current_period_quarter=period.quarter,
            period_started_at=utcnow(),
        )
        self._session.add(active)
        await self._session.flush()
        return active

    async def _lock_active_period(self, organization_id: UUID) -> ActivePeriod:
        """Serialize commits per organization; a held lock fails fast."""
        try:
            result = await self._session.execute(
                select(ActivePeriod)
                .where(ActivePeriod.organization_id == organization_id)
                .with_for_update(nowait=True)
            )
            active = result.scalar_one_or_none()
            if active is None:
                active = await self._start_active_period(organization_id)
        except (IntegrityError, DBAPIError) as e:
            raise ConcurrencyConflict(
                f"A period commit is already in progress for organization {organization_id}"
            ) from e
        return active

    # =========================================================================
    # COMMIT
    # =========================================================================

    async def commit_period(
        self,
        principal: Principal,
        year: int,
        quarter: int,
        notes: str | None = None,
    ) -> PeriodCommitResult:
        """
        Freeze every active risk for the given quarter.

        Flow:
        1. Validate the period and lock the organization's active period row
        2. Reject if the period already has a commit row
        3. Repair primary cause/impact invariants (audited, never fatal)
        4. Capture a RiskSnapshot per active risk into RiskHistory
        5. Insert the PeriodCommit ledger row
        6. Advance the active period and emit the commit audit event
        """
        period = validate_period(year, quarter)
        organization_id = principal.organization_id

        active = await self._lock_active_period(organization_id)

        existing = (
            await self._session.execute(
                select(PeriodCommit).where(
                    PeriodCommit.organization_id == organization_id,
                    PeriodCommit.period_year == period.year,
                    PeriodCommit.period_quarter == period.quarter,
                )
            )
        ).scalar_one_or_none()
        if existing:
            raise DuplicatePeriodCommit(period.year, period.quarter, existing.id)

        risks = (
            await self._session.execute(
                select(Risk)
                .where(Risk.organization_id == organization_id)
                .options(
                    selectinload(Risk.root_causes).selectinload(RiskRootCause.root_cause),
                    selectinload(Risk.impacts).selectinload(RiskImpact.impact),
                    selectinload(Risk.controls).selectinload(RiskControl.control),
                )
                .order_by(Risk.risk_code.asc())
            )
        ).scalars().all()
        if not risks:
            raise ValidationError("No risks found to snapshot")

        active_risks = [r for r in risks if r.is_open]
        committed_at = utcnow()
        repairs: list[InvariantRepair] = []

        for risk in active_risks:
            repairs.extend(
                await self._enforcer.repair(organization_id, risk.id, actor_id=principal.user_id)
            )
            snapshot = RiskSnapshot.capture(risk)
            self._session.add(
                RiskHistory(
                    organization_id=organization_id,
                    risk_id=risk.id,
                    period_year=period.year,
                    period_quarter=period.quarter,
                    change_type=ChangeType.PERIOD_COMMIT.value,
                    committed_at=committed_at,
                    committed_by=principal.user_id,
                    risk_code=snapshot.risk_code,
                    risk_title=snapshot.title,
                    risk_description=snapshot.description,
                    category=snapshot.category,
                    division=snapshot.division,
                    department=snapshot.department,
                    owner=snapshot.owner,
                    status=snapshot.status,
                    likelihood_inherent=snapshot.likelihood_inherent,
                    impact_inherent=snapshot.impact_inherent,
                    score_inherent=snapshot.score_inherent,
                    likelihood_residual=snapshot.likelihood_residual,
                    impact_residual=snapshot.impact_residual,
                    score_residual=snapshot.score_residual,
                    snapshot_data=snapshot.to_dict(),
                )
            )

        controls_count = (
            await self._session.execute(
                select(func.count()).select_from(Control).where(Control.organization_id == organization_id)
            )
        ).scalar_one()
        kris_count = (
            await self._session.execute(
                select(func.count())
                .select_from(IndicatorDefinition)
                .where(
                    IndicatorDefinition.organization_id == organization_id,
                    IndicatorDefinition.indicator_type == IndicatorType.KRI,
                )
            )
        ).scalar_one()

        commit = PeriodCommit(
            organization_id=organization_id,
            period_year=period.year,
            period_quarter=period.quarter,
            committed_at=committed_at,
            committed_by=principal.user_id,
            risks_count=len(active_risks),
            active_risks_count=len(active_risks),
            closed_risks_count=len(risks) - len(active_risks),
            controls_count=controls_count,
            kris_count=kris_count,
            repairs_count=len(repairs),
            notes=notes,
        )
        self._session.add(commit)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise DuplicatePeriodCommit(period.year, period.quarter) from e

        next_period = period.next()
        current = Period(active.current_period_year, active.current_period_quarter)
        if period >= current:
            active.previous_period_year = period.year
            active.previous_period_quarter = period.quarter
            active.current_period_year = next_period.year
            active.current_period_quarter = next_period.quarter
            active.period_started_at = committed_at
        await self._session.flush()

        await self._audit.emit(
            AuditEvent(
                organization_id=organization_id,
                actor_id=principal.user_id,
                action=AuditAction.COMMIT_PERIOD,
                entity_type="period_commit",
                entity_id=commit.id,
                before={"active_period": format_period(current)},
                after={
                    "active_period": format_period(
                        Period(active.current_period_year, active.current_period_quarter)
                    )
                },
                details={
                    "period": format_period(period),
                    "risks_count": commit.risks_count,
                    "closed_risks_count": commit.closed_risks_count,
                    "repairs_count": commit.repairs_count,
                },
            )
        )

        logger.info(
            f"Period committed for org {organization_id}: {format_period(period)} -> "
            f"{format_period(next_period)}, {len(active_risks)} risks snapshotted "
            f"({len(risks) - len(active_risks)} closed skipped, {len(repairs)} repairs)"
        )
        return PeriodCommitResult(
            commit=commit,
            period=period,
            next_period=next_period,
            risks_snapshotted=len(active_risks),
            active_risks_count=len(active_risks),
            closed_risks_count=len(risks) - len(active_risks),
            repairs=repairs,
        )

    # =========================================================================
    # HISTORY QUERIES
    # =========================================================================

    async def list_committed_periods(self, organization_id: UUID) -> Sequence[PeriodCommit]:
        result = await self._session.execute(
            select(PeriodCommit)
            .where(PeriodCommit.organization_id == organization_id)
            .order_by(PeriodCommit.period_year.desc(), PeriodCommit.period_quarter.desc())
        )
        return result.scalars().all()

    async def get_history_for_period(
        self, organization_id: UUID, period: Period
    ) -> Sequence[RiskHistory]:
        result = await self._session.execute(
            select(RiskHistory)
            .where(
                RiskHistory.organization_id == organization_id,
                RiskHistory.period_year == period.year,
                RiskHistory.period_quarter == period.quarter,
                RiskHistory.change_type == ChangeType.PERIOD_COMMIT.value,
            )
            .order_by(RiskHistory.risk_code.asc())
        )
        return result.scalars().all()

    async def get_risk_history(self, organization_id: UUID, risk_id: UUID) -> Sequence[RiskHistory]:
        result = await self._session.execute(
            select(RiskHistory)
            .where(
                RiskHistory.organization_id == organization_id,
                RiskHistory.risk_id == risk_id,
            )
            .order_by(RiskHistory.period_year.asc(), RiskHistory.period_quarter.asc())
        )
        return result.scalars().all()

    async def compare_periods(
        self, organization_id: UUID, period1: Period, period2: Period
    ) -> PeriodComparison:
        """New, closed and changed risks between two committed periods."""
        snapshot1 = await self.get_history_for_period(organization_id, period1)
        snapshot2 = await self.get_history_for_period(organization_id, period2)
        for period, rows in ((period1, snapshot1), (period2, snapshot2)):
            if not rows:
                raise NotFoundError("period_commit", format_period(period))

        risks1 = {r.risk_code: r for r in snapshot1}
        risks2 = {r.risk_code: r for r in snapshot2}

        changes = []
        for code, risk2 in risks2.items():
            risk1 = risks1.get(code)
            if risk1 is None:
                continue
            likelihood_change = risk2.likelihood_inherent - risk1.likelihood_inherent
            impact_change = risk2.impact_inherent - risk1.impact_inherent
            if likelihood_change or impact_change or risk1.status != risk2.status:
                changes.append(
                    RiskChange(
                        risk_code=code,
                        risk_title=risk2.risk_title,
                        likelihood_change=likelihood_change,
                        impact_change=impact_change,
                        score_change=risk2.score_inherent - risk1.score_inherent,
                        old_status=risk1.status,
                        new_status=risk2.status,
                    )
                )

        avg_inherent1 = _average(r.score_inherent for r in snapshot1)
        avg_inherent2 = _average(r.score_inherent for r in snapshot2)
        avg_residual1 = _average(_residual_or_inherent(r) for r in snapshot1)
        avg_residual2 = _average(_residual_or_inherent(r) for r in snapshot2)

        return PeriodComparison(
            period1=period1,
            period2=period2,
            risk_count_period1=len(snapshot1),
            risk_count_period2=len(snapshot2),
            risk_count_change=len(snapshot2) - len(snapshot1),
            new_risks=[code for code in risks2 if code not in risks1],
            closed_risks=[code for code in risks1 if code not in risks2],
            risk_changes=changes,
            score_changes={
                "avg_inherent_period1": round(avg_inherent1, 1),
                "avg_inherent_period2": round(avg_inherent2, 1),
                "avg_inherent_change": round(avg_inherent2 - avg_inherent1, 1),
                "avg_residual_period1": round(avg_residual1, 1),
                "avg_residual_period2": round(avg_residual2, 1),
                "avg_residual_change": round(avg_residual2 - avg_residual1, 1),
            },
        )

    async def period_trends(self, organization_id: UUID) -> list[PeriodTrend]:
        """Per committed period metrics, oldest first."""
        trends = []
        for commit in await self.list_committed_periods(organization_id):
            period = Period(commit.period_year, commit.period_quarter)
            history = await self.get_history_for_period(organization_id, period)

            by_status: dict[str, int] = {}
            by_level: dict[str, int] = {}
            for row in history:
                by_status[row.status] = by_status.get(row.status, 0) + 1
                level = score_level(_residual_or_inherent(row))
                by_level[level] = by_level.get(level, 0) + 1

            trends.append(
                PeriodTrend(
                    period=period,
                    snapshot_date=commit.committed_at,
                    total_risks=len(history),
                    by_status=by_status,
                    by_level=by_level,
                    avg_inherent_score=_average(r.score_inherent for r in history),
                    avg_residual_score=_average(_residual_or_inherent(r) for r in history),
                )
            )

        trends.sort(key=lambda t: t.period)
        return trends


def _residual_or_inherent(row: RiskHistory) -> int:
    return row.score_residual if row.score_residual is not None else row.score_inherent


def _average(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0
