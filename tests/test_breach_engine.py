"""
Tests for the Breach Engine - measurements and the breach lifecycle.

These tests verify:
1. INGEST: measurements classify against effective thresholds
2. DEDUP: one open breach per assignment, with a consecutive count
3. WORKFLOW: allowed transitions only, duration fixed on resolve
4. VIEWS: active ordering and urgency, trends, indicator health
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from risk_register.models import (
    AuditLog,
    Breach,
    BreachLevel,
    BreachStatus,
    IndicatorStatus,
    LimitBreachKind,
    RiskBreach,
    Severity,
    as_utc,
    utcnow,
)
from risk_register.services import (
    BreachEngine,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)


async def _breach_count(session: AsyncSession, **filters) -> int:
    query = select(func.count()).select_from(Breach)
    for name, value in filters.items():
        query = query.where(getattr(Breach, name) == value)
    return (await session.execute(query)).scalar_one()


@pytest.fixture
async def cpu(make_risk, make_indicator, make_assignment):
    """CPU utilisation KRI: catalog 75/90, assignment overrides warning to 80."""
    risk = await make_risk(title="Core banking outage")
    indicator = await make_indicator(code="KRI-CPU", name="CPU utilisation")
    return await make_assignment(risk, indicator, warning_override=80.0)


# =============================================================================
# TEST: MEASUREMENT INGESTION
# =============================================================================


class TestRecordMeasurement:
    """Measurements against effective thresholds."""

    async def test_override_warning_opens_breach(self, session, org_id, cpu):
        """Value 85 against override warning 80 opens a low-priority warning breach."""
        engine = BreachEngine(session)

        result = await engine.record_measurement(org_id, cpu.id, 85.0)

        assert result.level == BreachLevel.WARNING
        assert result.breach_opened is True
        assert result.thresholds.warning == 80.0
        assert result.thresholds.warning_source == "override"

        breach = await session.get(Breach, result.breach_id)
        assert breach.threshold_value == 80.0
        assert breach.breach_percentage == 6.25
        assert breach.priority == Severity.LOW
        assert breach.status == BreachStatus.ACTIVE
        assert breach.consecutive_breach_count == 1
        assert breach.risk_id == cpu.risk_id

        assert cpu.current_value == 85.0
        assert cpu.breach_status == BreachLevel.WARNING

    async def test_normal_value_opens_nothing(self, session, org_id, cpu):
        engine = BreachEngine(session)

        result = await engine.record_measurement(org_id, cpu.id, 50.0)

        assert result.level == BreachLevel.NORMAL
        assert result.breach_id is None
        assert await _breach_count(session) == 0
        assert cpu.breach_status == BreachLevel.NORMAL

    async def test_undetermined_when_no_threshold_resolves(
        self, session, org_id, make_risk, make_indicator, make_assignment
    ):
        """No catalog thresholds and no overrides: stored, reported, no breach."""
        risk = await make_risk()
        indicator = await make_indicator(threshold_warning=None, threshold_critical=None)
        assignment = await make_assignment(risk, indicator)
        engine = BreachEngine(session)

        result = await engine.record_measurement(org_id, assignment.id, 999.0)

        assert result.undetermined is True
        assert result.configuration_error is not None
        assert result.configuration_error.assignment_id == assignment.id
        assert assignment.breach_status == BreachLevel.UNDETERMINED
        assert assignment.current_value == 999.0
        assert await _breach_count(session) == 0

    async def test_unknown_assignment(self, session, org_id):
        engine = BreachEngine(session)

        with pytest.raises(NotFoundError):
            await engine.record_measurement(org_id, uuid4(), 1.0)

    async def test_other_organization_cannot_measure(self, session, cpu):
        engine = BreachEngine(session)

        with pytest.raises(NotFoundError):
            await engine.record_measurement(uuid4(), cpu.id, 85.0)

    async def test_late_measurement_changes_no_live_state(self, session, org_id, cpu):
        """A stale normal reading cannot flip a critical assignment or break its streak."""
        engine = BreachEngine(session)
        now = utcnow()

        first = await engine.record_measurement(org_id, cpu.id, 95.0, observed_at=now)
        await engine.record_measurement(org_id, cpu.id, 96.0, observed_at=now)
        late = await engine.record_measurement(org_id, cpu.id, 50.0, observed_at=now - timedelta(days=3))

        assert late.late is True
        assert late.level == BreachLevel.NORMAL
        assert late.breach_id is None
        assert as_utc(cpu.last_measured_at) == now
        assert cpu.current_value == 96.0
        assert cpu.breach_status == BreachLevel.CRITICAL

        breach = await session.get(Breach, first.breach_id)
        assert breach.consecutive_breach_count == 2
        assert breach.measured_value == 96.0

    async def test_late_breaching_value_opens_nothing(self, session, org_id, cpu):
        engine = BreachEngine(session)
        now = utcnow()

        await engine.record_measurement(org_id, cpu.id, 50.0, observed_at=now)
        late = await engine.record_measurement(org_id, cpu.id, 95.0, observed_at=now - timedelta(hours=1))

        assert late.late is True
        assert late.level == BreachLevel.CRITICAL
        assert await _breach_count(session) == 0
        assert cpu.breach_status == BreachLevel.NORMAL

    async def test_deprecated_indicator_cannot_be_measured(
        self, session, org_id, make_risk, make_indicator, make_assignment
    ):
        risk = await make_risk()
        indicator = await make_indicator(status=IndicatorStatus.DEPRECATED)
        assignment = await make_assignment(risk, indicator)
        engine = BreachEngine(session)

        with pytest.raises(ValidationError):
            await engine.record_measurement(org_id, assignment.id, 95.0)
        assert assignment.current_value is None
        assert await _breach_count(session) == 0

    async def test_measurement_is_audited_on_status_change(self, session, org_id, cpu):
        engine = BreachEngine(session)

        await engine.record_measurement(org_id, cpu.id, 85.0)

        actions = (
            await session.execute(select(AuditLog.action).where(AuditLog.organization_id == org_id))
        ).scalars().all()
        assert "breach_opened" in [a.value for a in actions]
        assert "measure" in [a.value for a in actions]


# =============================================================================
# TEST: OPEN BREACH DEDUPLICATION
# =============================================================================


class TestOpenBreachDedup:
    """At most one open breach per assignment."""

    async def test_repeated_breaches_update_the_open_breach(self, session, org_id, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 81.0)
        second = await engine.record_measurement(org_id, cpu.id, 82.0)

        assert second.breach_opened is False
        assert second.breach_id == first.breach_id
        assert await _breach_count(session) == 1

        breach = await session.get(Breach, first.breach_id)
        assert breach.consecutive_breach_count == 2
        assert breach.measured_value == 82.0

    async def test_escalation_continues_streak_and_raises_priority(self, session, org_id, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 81.0)
        await engine.record_measurement(org_id, cpu.id, 82.0)
        await engine.record_measurement(org_id, cpu.id, 95.0)

        breach = await session.get(Breach, first.breach_id)
        assert breach.breach_level == BreachLevel.CRITICAL
        assert breach.threshold_value == 90.0
        assert breach.consecutive_breach_count == 3
        assert breach.priority == Severity.HIGH

    async def test_improving_level_resets_streak(self, session, org_id, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 95.0)
        await engine.record_measurement(org_id, cpu.id, 96.0)
        await engine.record_measurement(org_id, cpu.id, 85.0)

        breach = await session.get(Breach, first.breach_id)
        assert breach.breach_level == BreachLevel.WARNING
        assert breach.consecutive_breach_count == 1

    async def test_normal_value_resets_streak_but_keeps_breach_open(self, session, org_id, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 85.0)
        await engine.record_measurement(org_id, cpu.id, 86.0)
        normal = await engine.record_measurement(org_id, cpu.id, 50.0)

        breach = await session.get(Breach, first.breach_id)
        assert normal.level == BreachLevel.NORMAL
        assert breach.status == BreachStatus.ACTIVE
        assert breach.consecutive_breach_count == 1

        again = await engine.record_measurement(org_id, cpu.id, 85.0)
        assert again.breach_id == first.breach_id
        assert breach.consecutive_breach_count == 1
        assert await _breach_count(session) == 1

    async def test_new_breach_after_resolution(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 85.0)
        await engine.resolve_breach(principal, first.breach_id, "Capacity added")
        second = await engine.record_measurement(org_id, cpu.id, 85.0)

        assert second.breach_opened is True
        assert second.breach_id != first.breach_id
        assert await _breach_count(session, status=BreachStatus.ACTIVE) == 1

    async def test_pinned_priority_survives_new_measurements(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)

        first = await engine.record_measurement(org_id, cpu.id, 85.0)
        await engine.set_priority(principal, first.breach_id, Severity.CRITICAL)
        await engine.record_measurement(org_id, cpu.id, 86.0)

        breach = await session.get(Breach, first.breach_id)
        assert breach.priority == Severity.CRITICAL
        assert breach.priority_overridden is True


# =============================================================================
# TEST: WORKFLOW
# =============================================================================


class TestBreachWorkflow:
    """State machine transitions."""

    async def test_resolve_fixes_duration(self, session, org_id, principal, cpu):
        """A breach opened five hours ago resolves with a 5.0 hour duration."""
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)
        breach = await session.get(Breach, result.breach_id)
        breach.breach_date = utcnow() - timedelta(hours=5)
        await session.flush()

        resolved = await engine.resolve_breach(principal, breach.id, "Batch job rescheduled")

        assert resolved.status == BreachStatus.RESOLVED
        assert resolved.breach_duration_hours == 5.0
        assert resolved.resolved_by == principal.user_id
        assert resolved.resolution_notes == "Batch job rescheduled"

    async def test_terminal_breach_rejects_transitions(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)
        await engine.resolve_breach(principal, result.breach_id, "Fixed")

        with pytest.raises(WorkflowStateError) as exc_info:
            await engine.acknowledge_breach(principal, result.breach_id)
        assert exc_info.value.current_state == "resolved"

        with pytest.raises(WorkflowStateError):
            await engine.resolve_breach(principal, result.breach_id, "Again")

    async def test_resolution_requires_notes(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)

        with pytest.raises(ValidationError):
            await engine.resolve_breach(principal, result.breach_id, "   ")

    async def test_acknowledge_then_remediate(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)

        acknowledged = await engine.acknowledge_breach(principal, result.breach_id, notes="Looking")
        assert acknowledged.status == BreachStatus.INVESTIGATING
        assert acknowledged.acknowledged_by == principal.user_id

        with pytest.raises(WorkflowStateError):
            await engine.acknowledge_breach(principal, result.breach_id)

        mitigating = await engine.begin_remediation(principal, result.breach_id, action_plan="Scale out")
        assert mitigating.status == BreachStatus.MITIGATING
        assert mitigating.action_plan == "Scale out"

    async def test_false_positive_is_terminal(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)

        breach = await engine.mark_false_positive(principal, result.breach_id, notes="Sensor glitch")
        assert breach.status == BreachStatus.FALSE_POSITIVE

        with pytest.raises(WorkflowStateError):
            await engine.begin_remediation(principal, result.breach_id)

    async def test_analysis_allowed_after_resolution(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)
        await engine.resolve_breach(principal, result.breach_id, "Fixed")

        breach = await engine.record_analysis(
            principal,
            result.breach_id,
            root_cause_analysis="Month-end batch overlap",
            preventive_actions="Stagger batch windows",
        )
        assert breach.root_cause_analysis == "Month-end batch overlap"
        assert breach.status == BreachStatus.RESOLVED

    async def test_assign_action(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        result = await engine.record_measurement(org_id, cpu.id, 85.0)
        owner = uuid4()

        breach = await engine.assign_action(principal, result.breach_id, owner_id=owner, action_plan="Tune")
        assert breach.action_owner == owner
        assert breach.action_plan == "Tune"


# =============================================================================
# TEST: VIEWS
# =============================================================================


class TestBreachViews:
    """Active list, trends and indicator health."""

    async def test_active_list_orders_by_priority_then_age(
        self, session, org_id, make_risk, make_indicator, make_assignment
    ):
        engine = BreachEngine(session)
        risk = await make_risk()
        warning_assignment = await make_assignment(risk, await make_indicator())
        critical_assignment = await make_assignment(risk, await make_indicator())

        low = await engine.record_measurement(org_id, warning_assignment.id, 80.0)
        high = await engine.record_measurement(org_id, critical_assignment.id, 95.0)

        now = utcnow()
        (await session.get(Breach, low.breach_id)).breach_date = now - timedelta(hours=50)
        (await session.get(Breach, high.breach_id)).breach_date = now - timedelta(hours=30)
        await session.flush()

        views = await engine.list_active_breaches(org_id, now=now)

        assert [v.breach.id for v in views] == [high.breach_id, low.breach_id]
        assert views[0].urgency == "Urgent"
        assert views[1].urgency == "Overdue"
        assert views[1].hours_active == 50.0
        assert views[0].risk_code == risk.risk_code

    async def test_fresh_breach_is_normal_urgency(self, session, org_id, cpu):
        engine = BreachEngine(session)
        await engine.record_measurement(org_id, cpu.id, 85.0)

        views = await engine.list_active_breaches(org_id)
        assert len(views) == 1
        assert views[0].urgency == "Normal"
        assert views[0].indicator_code == "KRI-CPU"

    async def test_trends_aggregate_per_indicator(self, session, org_id, principal, cpu):
        engine = BreachEngine(session)
        first = await engine.record_measurement(org_id, cpu.id, 95.0)
        await engine.resolve_breach(principal, first.breach_id, "Fixed")
        await engine.record_measurement(org_id, cpu.id, 85.0)

        trends = await engine.breach_trends(org_id)

        assert len(trends) == 1
        trend = trends[0]
        assert trend.indicator_code == "KRI-CPU"
        assert trend.total_breaches == 2
        assert trend.critical_breaches == 1
        assert trend.warning_breaches == 1
        assert trend.resolved_breaches == 1
        assert trend.active_breaches == 1

    async def test_indicator_health_labels(self, session, org_id, make_indicator):
        now = utcnow()
        breached = await make_indicator(code="KRI-A")
        frequent = await make_indicator(code="KRI-B")
        improving = await make_indicator(code="KRI-C")
        healthy = await make_indicator(code="KRI-D")
        await make_indicator(code="KRI-E", status=IndicatorStatus.DEPRECATED)

        def _breach(indicator, days_ago, status=BreachStatus.RESOLVED):
            return Breach(
                organization_id=org_id,
                indicator_id=indicator.id,
                breach_level=BreachLevel.WARNING,
                measured_value=80.0,
                threshold_value=75.0,
                status=status,
                priority=Severity.LOW,
                breach_date=now - timedelta(days=days_ago),
                last_measured_at=now - timedelta(days=days_ago),
            )

        session.add_all(
            [
                _breach(breached, 2, status=BreachStatus.ACTIVE),
                _breach(frequent, 1),
                _breach(frequent, 2),
                _breach(frequent, 3),
                _breach(improving, 9),
                _breach(improving, 10),
            ]
        )
        await session.flush()

        engine = BreachEngine(session)
        health = {h.indicator_code: h for h in await engine.indicator_health(org_id, now=now)}

        assert set(health) == {"KRI-A", "KRI-B", "KRI-C", "KRI-D"}
        assert health["KRI-A"].health_status == "Breached"
        assert health["KRI-B"].health_status == "Frequent Breaches"
        assert health["KRI-B"].trend == "Worsening"
        assert health["KRI-C"].health_status == "Stable"
        assert health["KRI-C"].trend == "Improving"
        assert health["KRI-D"].health_status == "Healthy"
        assert health["KRI-D"].breaches_in_window == 0


# =============================================================================
# TEST: TOLERANCE LIMITS BOUND TO INDICATORS
# =============================================================================


class TestMeasurementLimitChecks:
    """Measurements also check tolerance limits bound to their indicator."""

    async def test_measurement_opens_limit_breach(
        self, session, org_id, make_risk, make_indicator, make_assignment, make_limit
    ):
        risk = await make_risk()
        indicator = await make_indicator()
        assignment = await make_assignment(risk, indicator)
        limit = await make_limit(indicator_id=indicator.id, soft_limit=80.0, hard_limit=100.0)
        engine = BreachEngine(session)

        result = await engine.record_measurement(org_id, assignment.id, 85.0)

        assert len(result.limit_checks) == 1
        check = result.limit_checks[0]
        assert check.limit_id == limit.id
        assert check.opened is True
        assert result.limit_breach_ids == [check.risk_breach_id]

        risk_breach = await session.get(RiskBreach, check.risk_breach_id)
        assert risk_breach.assignment_id == assignment.id
        assert risk_breach.indicator_breach_id == result.breach_id
        assert risk_breach.notified_roles == ["risk_manager"]

    async def test_undetermined_measurement_still_checks_limits(
        self, session, org_id, make_risk, make_indicator, make_assignment, make_limit
    ):
        """No indicator thresholds, but the bound hard limit still fires."""
        risk = await make_risk()
        indicator = await make_indicator(threshold_warning=None, threshold_critical=None)
        assignment = await make_assignment(risk, indicator)
        await make_limit(indicator_id=indicator.id, soft_limit=80.0, hard_limit=100.0)
        engine = BreachEngine(session)

        result = await engine.record_measurement(org_id, assignment.id, 150.0)

        assert result.undetermined is True
        assert result.breach_id is None
        assert len(result.limit_breach_ids) == 1

        risk_breach = await session.get(RiskBreach, result.limit_breach_ids[0])
        assert risk_breach.breach_type == LimitBreachKind.HARD
        assert risk_breach.indicator_breach_id is None
        assert risk_breach.assignment_id == assignment.id
