"""
Tests for the Escalation Engine - tolerance limits and exceptions.

These tests verify:
1. DETECT: soft/hard classification opens or escalates one breach per limit
2. LATCHES: CRO, board and regulator escalations are one-way
3. EXCEPTIONS: request validation, approval authority, no self-approval
4. EXPIRY: lapsed exceptions reopen (or resolve when remediated)
5. OVERSIGHT: hard breaches past their grace period are reported
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from risk_register.models import (
    LimitBreachKind,
    LimitBreachStatus,
    RiskBreach,
    Severity,
    utcnow,
)
from risk_register.services import (
    EscalationEngine,
    ExceptionRequestInput,
    PermissionDeniedError,
    ValidationError,
    WorkflowStateError,
)


def _exception(days: int = 30, justification: str = "Planned migration keeps losses elevated") -> ExceptionRequestInput:
    return ExceptionRequestInput(
        business_justification=justification,
        compensating_controls="Daily loss review by the CRO office",
        valid_until=utcnow() + timedelta(days=days),
    )


async def _hard_breach(engine: EscalationEngine, principal, limit) -> RiskBreach:
    check = await engine.record_limit_measurement(principal, limit.id, 120.0)
    return await engine.get_limit_breach(principal.organization_id, check.risk_breach_id)


# =============================================================================
# TEST: DETECTION
# =============================================================================


class TestLimitDetection:
    """Classification and breach bookkeeping."""

    async def test_soft_breach_notifies_soft_roles(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)

        check = await engine.record_limit_measurement(principal, limit.id, 90.0)

        assert check.opened is True
        assert check.evaluation.kind == LimitBreachKind.SOFT
        assert check.notified_roles == ["risk_manager"]
        assert check.escalated is False

        breach = await engine.get_limit_breach(principal.organization_id, check.risk_breach_id)
        assert breach.status == LimitBreachStatus.OPEN
        assert breach.severity == Severity.LOW
        assert breach.limit_value == 80.0
        assert breach.escalated_to_cro is False

    async def test_within_bounds_opens_nothing(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)

        check = await engine.record_limit_measurement(principal, limit.id, 50.0)

        assert check.evaluation.is_breach is False
        assert check.risk_breach_id is None

    async def test_repeated_breaches_share_one_open_breach(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)

        first = await engine.record_limit_measurement(principal, limit.id, 90.0)
        second = await engine.record_limit_measurement(principal, limit.id, 92.0)

        assert second.opened is False
        assert second.risk_breach_id == first.risk_breach_id
        count = (await session.execute(select(func.count()).select_from(RiskBreach))).scalar_one()
        assert count == 1

    async def test_soft_breach_escalates_to_hard(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)

        first = await engine.record_limit_measurement(principal, limit.id, 90.0)
        second = await engine.record_limit_measurement(principal, limit.id, 160.0)

        assert second.risk_breach_id == first.risk_breach_id
        assert second.notified_roles == ["cro"]
        assert second.escalated is True

        breach = await engine.get_limit_breach(principal.organization_id, first.risk_breach_id)
        assert breach.breach_type == LimitBreachKind.HARD
        assert breach.severity == Severity.CRITICAL
        assert breach.limit_value == 100.0
        assert breach.notified_roles == ["risk_manager", "cro"]
        assert breach.escalated_to_cro is True


# =============================================================================
# TEST: ESCALATION LATCHES
# =============================================================================


class TestEscalationLatches:
    """Latches are set once and never cleared."""

    async def test_hard_breach_sets_required_latches(self, session, principal, make_limit):
        limit = await make_limit(board_escalation_required=True, regulator_notification_required=True)
        engine = EscalationEngine(session)

        breach = await _hard_breach(engine, principal, limit)

        assert breach.escalated_to_cro is True
        assert breach.escalated_to_board is True
        assert breach.regulator_notified is True
        assert breach.escalated_to_board_at is not None

    async def test_board_latch_only_when_required(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)

        breach = await _hard_breach(engine, principal, limit)

        assert breach.escalated_to_cro is True
        assert breach.escalated_to_board is False
        assert breach.regulator_notified is False

    async def test_latches_survive_return_within_bounds(self, session, principal, make_limit):
        limit = await make_limit(board_escalation_required=True)
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        await engine.record_limit_measurement(principal, limit.id, 50.0)

        assert breach.status == LimitBreachStatus.OPEN
        assert breach.within_limits_at is not None
        assert breach.latest_value == 50.0
        assert breach.escalated_to_cro is True
        assert breach.escalated_to_board is True


# =============================================================================
# TEST: TOLERANCE EXCEPTIONS
# =============================================================================


class TestToleranceExceptions:
    """Request, approve and reject."""

    async def test_past_validity_is_rejected(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        with pytest.raises(ValidationError):
            await engine.request_tolerance_exception(principal, breach.id, _exception(days=-1))
        assert breach.status == LimitBreachStatus.OPEN

    async def test_short_justification_is_rejected(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        with pytest.raises(ValidationError):
            await engine.request_tolerance_exception(principal, breach.id, _exception(justification="Too short"))

    async def test_soft_breaches_cannot_request_exceptions(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        check = await engine.record_limit_measurement(principal, limit.id, 90.0)

        with pytest.raises(ValidationError):
            await engine.request_tolerance_exception(principal, check.risk_breach_id, _exception())

    async def test_request_and_approve(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        pending = await engine.request_tolerance_exception(principal, breach.id, _exception())
        assert pending.status == LimitBreachStatus.PENDING_APPROVAL
        assert pending.exception_requested_by == principal.user_id

        approved = await engine.approve_exception(cro, breach.id, rationale="Migration is tracked")
        assert approved.status == LimitBreachStatus.APPROVED
        assert approved.approval_decided_by == cro.user_id

    async def test_requester_cannot_approve_own_exception(self, session, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, cro, limit)
        await engine.request_tolerance_exception(cro, breach.id, _exception())

        with pytest.raises(PermissionDeniedError):
            await engine.approve_exception(cro, breach.id)
        assert breach.status == LimitBreachStatus.PENDING_APPROVAL

    async def test_member_cannot_decide(self, session, principal, admin, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, admin, limit)
        await engine.request_tolerance_exception(admin, breach.id, _exception())

        with pytest.raises(PermissionDeniedError):
            await engine.approve_exception(principal, breach.id)
        with pytest.raises(PermissionDeniedError):
            await engine.reject_exception(principal, breach.id, "No")

    async def test_reject_then_request_again(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)
        await engine.request_tolerance_exception(principal, breach.id, _exception())

        with pytest.raises(ValidationError):
            await engine.reject_exception(cro, breach.id, "  ")

        rejected = await engine.reject_exception(cro, breach.id, "Compensating controls are weak")
        assert rejected.status == LimitBreachStatus.REJECTED
        assert rejected.rejection_reason == "Compensating controls are weak"

        again = await engine.request_tolerance_exception(principal, breach.id, _exception())
        assert again.status == LimitBreachStatus.PENDING_APPROVAL
        assert again.rejection_reason is None

    async def test_approve_requires_pending(self, session, cro, make_limit, principal):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        with pytest.raises(WorkflowStateError) as exc_info:
            await engine.approve_exception(cro, breach.id)
        assert exc_info.value.current_state == "open"


# =============================================================================
# TEST: RESOLUTION
# =============================================================================


class TestLimitBreachResolution:
    """Hard breaches resolve only once back within bounds."""

    async def test_hard_breach_cannot_resolve_while_outside_bounds(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        with pytest.raises(WorkflowStateError):
            await engine.resolve_limit_breach(principal, breach.id, "Losses recovered")

        await engine.record_limit_measurement(principal, limit.id, 50.0)
        resolved = await engine.resolve_limit_breach(principal, breach.id, "Losses recovered")
        assert resolved.status == LimitBreachStatus.RESOLVED

        closed = await engine.close_limit_breach(principal, breach.id)
        assert closed.status == LimitBreachStatus.CLOSED

    async def test_soft_breach_resolves_directly(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        check = await engine.record_limit_measurement(principal, limit.id, 90.0)

        resolved = await engine.resolve_limit_breach(principal, check.risk_breach_id, "Accepted")
        assert resolved.status == LimitBreachStatus.RESOLVED

    async def test_workflow_steps(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)

        assert (await engine.acknowledge(principal, breach.id)).status == LimitBreachStatus.ACKNOWLEDGED
        assert (await engine.start_investigation(principal, breach.id)).status == LimitBreachStatus.INVESTIGATING
        assert (
            await engine.start_remediation(principal, breach.id)
        ).status == LimitBreachStatus.REMEDIATION_IN_PROGRESS

        with pytest.raises(WorkflowStateError):
            await engine.acknowledge(principal, breach.id)


# =============================================================================
# TEST: EXPIRY & OVERSIGHT
# =============================================================================


class TestExceptionExpiry:
    """Lapsed exceptions are re-evaluated."""

    async def _approved(self, engine, session, principal, cro, limit) -> RiskBreach:
        breach = await _hard_breach(engine, principal, limit)
        await engine.request_tolerance_exception(principal, breach.id, _exception())
        await engine.approve_exception(cro, breach.id)
        breach.valid_until = utcnow() - timedelta(minutes=5)
        await session.flush()
        return breach

    async def test_expired_exception_reopens(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await self._approved(engine, session, principal, cro, limit)

        stats = await engine.expire_exceptions()

        assert stats.expired == 1
        assert stats.reopened == 1
        assert breach.status == LimitBreachStatus.OPEN
        assert breach.expired_exception_count == 1
        assert breach.business_justification is not None

    async def test_expired_exception_resolves_when_remediated(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await self._approved(engine, session, principal, cro, limit)
        await engine.record_limit_measurement(principal, limit.id, 50.0)

        stats = await engine.expire_exceptions()

        assert stats.resolved == 1
        assert breach.status == LimitBreachStatus.RESOLVED

    async def test_live_exception_is_untouched(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)
        await engine.request_tolerance_exception(principal, breach.id, _exception())
        await engine.approve_exception(cro, breach.id)

        stats = await engine.expire_exceptions()

        assert stats.expired == 0
        assert breach.status == LimitBreachStatus.APPROVED


class TestOverdueHardBreaches:
    """Grace period reporting."""

    async def test_old_untolerated_hard_breach_is_overdue(self, session, principal, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)
        breach.breach_date = utcnow() - timedelta(days=20)
        await session.flush()

        overdue = await engine.list_overdue_hard_breaches(principal.organization_id)

        assert [o.breach.id for o in overdue] == [breach.id]
        assert overdue[0].grace_days == 14
        assert overdue[0].days_open == 20
        assert breach.status == LimitBreachStatus.OPEN

    async def test_limit_grace_days_override_default(self, session, principal, make_limit):
        limit = await make_limit(exception_grace_days=30)
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)
        breach.breach_date = utcnow() - timedelta(days=20)
        await session.flush()

        assert await engine.list_overdue_hard_breaches(principal.organization_id) == []

    async def test_approved_exception_is_not_overdue(self, session, principal, cro, make_limit):
        limit = await make_limit()
        engine = EscalationEngine(session)
        breach = await _hard_breach(engine, principal, limit)
        await engine.request_tolerance_exception(principal, breach.id, _exception())
        await engine.approve_exception(cro, breach.id)
        breach.breach_date = utcnow() - timedelta(days=20)
        await session.flush()

        assert await engine.list_overdue_hard_breaches(principal.organization_id) == []

    async def test_statistics(self, session, principal, make_limit):
        engine = EscalationEngine(session)
        await engine.record_limit_measurement(principal, (await make_limit(name="Losses")).id, 90.0)
        await engine.record_limit_measurement(principal, (await make_limit(name="Outages")).id, 160.0)

        stats = await engine.limit_breach_statistics(principal.organization_id)

        assert stats.total == 2
        assert stats.open == 2
        assert stats.by_type == {"soft": 1, "hard": 1}
        assert stats.by_severity["critical"] == 1
        assert stats.by_severity["low"] == 1
