"""
Escalation Engine: organization level tolerance limits and hard-limit exceptions.

A value checked against a ToleranceLimit is classified none/soft/hard:

- SOFT: a RiskBreach is opened and the limit's soft-notify roles are fanned out.
- HARD: additionally the CRO latch is set and, depending on the limit,
  the board and regulator latches. The breach then needs either remediation
  (value back within bounds) or an approved tolerance exception.

Exception lifecycle:
    OPEN/ACKNOWLEDGED/INVESTIGATING/REMEDIATION_IN_PROGRESS/REJECTED
        --request--> PENDING_APPROVAL --approve--> APPROVED
                                      --reject---> REJECTED
    APPROVED --valid_until passes--> re-evaluated (OPEN, or RESOLVED if remediated)

Escalation latches are one-way: they are set once and never cleared.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID
import logging

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.principal import Principal
from ..models import (
    AuditAction,
    LimitBreachKind,
    LimitBreachStatus,
    RiskBreach,
    Severity,
    ToleranceLimit,
    as_utc,
    utcnow,
)
from .audit import AuditEvent, AuditRecorder, field_snapshot
from .errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    WorkflowStateError,
)
from .thresholds import (
    LimitEvaluation,
    classify_limit,
    limit_severity,
    resolve_limit,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class EscalationConfig:
    """Configuration for tolerance exception handling."""
    governance_roles: frozenset[str] = frozenset({"owner", "admin", "cro", "board"})
    default_grace_days: int = 14
    max_exception_days: int = 365
    min_justification_length: int = 10


DEFAULT_CONFIG = EscalationConfig()


def config_from_settings() -> EscalationConfig:
    settings = get_settings()
    return EscalationConfig(
        governance_roles=settings.appetite_governance_roles,
        default_grace_days=settings.exception_grace_days,
        max_exception_days=settings.max_exception_days,
    )


OPEN_STATUSES = (
    LimitBreachStatus.OPEN,
    LimitBreachStatus.ACKNOWLEDGED,
    LimitBreachStatus.INVESTIGATING,
    LimitBreachStatus.REMEDIATION_IN_PROGRESS,
    LimitBreachStatus.PENDING_APPROVAL,
    LimitBreachStatus.APPROVED,
    LimitBreachStatus.REJECTED,
)

EXCEPTION_REQUESTABLE = (
    LimitBreachStatus.OPEN,
    LimitBreachStatus.ACKNOWLEDGED,
    LimitBreachStatus.INVESTIGATING,
    LimitBreachStatus.REMEDIATION_IN_PROGRESS,
    LimitBreachStatus.REJECTED,
)

# Hard breaches sitting in these states have neither remediation sign-off
# nor a live exception.
UNTOLERATED = (
    LimitBreachStatus.OPEN,
    LimitBreachStatus.ACKNOWLEDGED,
    LimitBreachStatus.INVESTIGATING,
    LimitBreachStatus.REMEDIATION_IN_PROGRESS,
    LimitBreachStatus.REJECTED,
)

SNAPSHOT_FIELDS = (
    "status",
    "breach_type",
    "severity",
    "latest_value",
    "valid_until",
    "escalated_to_cro",
    "escalated_to_board",
    "regulator_notified",
)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class LimitCheckResult:
    """Outcome of checking one value against one limit."""
    limit_id: UUID
    evaluation: LimitEvaluation
    risk_breach_id: UUID | None = None
    opened: bool = False
    escalated: bool = False
    notified_roles: list[str] = field(default_factory=list)


@dataclass
class ExceptionRequestInput:
    """Input for filing a tolerance exception."""
    business_justification: str
    compensating_controls: str
    valid_until: datetime


@dataclass
class OverdueHardBreach:
    breach: RiskBreach
    limit_name: str
    grace_days: int
    days_open: int


@dataclass
class ExceptionExpiryStats:
    expired: int = 0
    reopened: int = 0
    resolved: int = 0


@dataclass
class LimitBreachStatistics:
    total: int
    open: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    avg_resolution_days: float


# =============================================================================
# ESCALATION ENGINE
# =============================================================================


class EscalationEngine:
    """Tolerance/limit breach detection and the exception approval workflow."""

    def __init__(
        self,
        session: AsyncSession,
        config: EscalationConfig | None = None,
        audit: AuditRecorder | None = None,
    ):
        self._session = session
        self._config = config or DEFAULT_CONFIG
        self._audit = audit or AuditRecorder(session)

    # =========================================================================
    # DETECTION
    # =========================================================================

    async def evaluate_indicator_limits(
        self,
        organization_id: UUID,
        indicator_id: UUID,
        value: float,
        observed_at: datetime,
        assignment_id: UUID | None = None,
        risk_id: UUID | None = None,
        indicator_breach_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> list[LimitCheckResult]:
        """Check a measurement against every active limit bound to its indicator."""
        result = await self._session.execute(
            select(ToleranceLimit).where(
                ToleranceLimit.organization_id == organization_id,
                ToleranceLimit.indicator_id == indicator_id,
                ToleranceLimit.is_active.is_(True),
            )
        )
        checks = []
        for limit in result.scalars().all():
            checks.append(
                await self.evaluate_limit(
                    limit,
                    value,
                    observed_at,
                    assignment_id=assignment_id,
                    risk_id=risk_id,
                    indicator_breach_id=indicator_breach_id,
                    actor_id=actor_id,
                )
            )
        return checks

    async def record_limit_measurement(
        self,
        principal: Principal,
        limit_id: UUID,
        value: float,
        observed_at: datetime | None = None,
    ) -> LimitCheckResult:
        """Check a directly reported value for an appetite metric."""
        limit = await self._get_limit(principal.organization_id, limit_id)
        return await self.evaluate_limit(
            limit, value, observed_at or utcnow(), actor_id=principal.user_id
        )

    async def evaluate_limit(
        self,
        limit: ToleranceLimit,
        value: float,
        observed_at: datetime,
        assignment_id: UUID | None = None,
        risk_id: UUID | None = None,
        indicator_breach_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> LimitCheckResult:
        """
        Classify a value against a limit and open or update its breach.

        Flow:
        1. Resolve and classify (hard checked before soft)
        2. Lock the open breach for (limit, assignment), if any
        3. Within bounds: mark the open breach as remediated-so-far
        4. Breaching: open a new RiskBreach or escalate the open one
        5. Fan out notify roles and set one-way escalation latches
        """
        evaluation = classify_limit(value, resolve_limit(limit))
        check = LimitCheckResult(limit_id=limit.id, evaluation=evaluation)

        query = (
            select(RiskBreach)
            .where(
                RiskBreach.limit_id == limit.id,
                RiskBreach.status.in_(OPEN_STATUSES),
            )
            .order_by(RiskBreach.breach_date.desc())
            .limit(1)
            .with_for_update()
        )
        if assignment_id is None:
            query = query.where(RiskBreach.assignment_id.is_(None))
        else:
            query = query.where(RiskBreach.assignment_id == assignment_id)
        open_breach = (await self._session.execute(query)).scalar_one_or_none()

        if not evaluation.is_breach:
            if open_breach is not None:
                open_breach.latest_value = value
                open_breach.last_measured_at = observed_at
                if open_breach.within_limits_at is None:
                    open_breach.within_limits_at = observed_at
                check.risk_breach_id = open_breach.id
                await self._session.flush()
            return check

        if open_breach is None:
            breach = RiskBreach(
                organization_id=limit.organization_id,
                limit_id=limit.id,
                indicator_breach_id=indicator_breach_id,
                assignment_id=assignment_id,
                risk_id=risk_id,
                breach_type=evaluation.kind,
                measured_value=value,
                latest_value=value,
                limit_value=evaluation.limit_value,
                variance_amount=evaluation.variance_amount,
                variance_percentage=evaluation.variance_percentage,
                severity=limit_severity(evaluation.kind, evaluation.variance_percentage),
                status=LimitBreachStatus.OPEN,
                breach_date=observed_at,
                last_measured_at=observed_at,
                notified_roles=[],
            )
            self._session.add(breach)
            await self._session.flush()
            check.opened = True
            before = None
            logger.info(
                f"{evaluation.kind.value.upper()} limit breach on '{limit.name}': "
                f"{value} vs {evaluation.limit_value}"
            )
        else:
            breach = open_breach
            before = field_snapshot(breach, SNAPSHOT_FIELDS)
            breach.latest_value = value
            breach.last_measured_at = observed_at
            breach.within_limits_at = None
            if indicator_breach_id and breach.indicator_breach_id is None:
                breach.indicator_breach_id = indicator_breach_id
            if breach.breach_type == LimitBreachKind.SOFT and evaluation.kind == LimitBreachKind.HARD:
                breach.breach_type = LimitBreachKind.HARD
                breach.measured_value = value
                breach.limit_value = evaluation.limit_value
                breach.variance_amount = evaluation.variance_amount
                breach.variance_percentage = evaluation.variance_percentage
                breach.severity = limit_severity(LimitBreachKind.HARD, evaluation.variance_percentage)
                logger.info(f"Limit breach {breach.id} escalated from SOFT to HARD")

        check.risk_breach_id = breach.id
        check.notified_roles = self._fan_out(breach, limit)
        check.escalated = self._apply_latches(breach, limit, observed_at)
        await self._session.flush()

        if check.opened:
            await self._audit.emit(
                AuditEvent(
                    organization_id=limit.organization_id,
                    actor_id=actor_id,
                    action=AuditAction.LIMIT_BREACH,
                    entity_type="risk_breach",
                    entity_id=breach.id,
                    after=field_snapshot(breach, SNAPSHOT_FIELDS),
                    details={
                        "limit_id": limit.id,
                        "limit_value": evaluation.limit_value,
                        "measured_value": value,
                        "notified_roles": check.notified_roles,
                    },
                )
            )
        elif before != field_snapshot(breach, SNAPSHOT_FIELDS):
            await self._audit.emit(
                AuditEvent(
                    organization_id=limit.organization_id,
                    actor_id=actor_id,
                    action=AuditAction.ESCALATE if check.escalated else AuditAction.UPDATE,
                    entity_type="risk_breach",
                    entity_id=breach.id,
                    before=before,
                    after=field_snapshot(breach, SNAPSHOT_FIELDS),
                    details={"notified_roles": check.notified_roles},
                )
            )
        return check

    def _fan_out(self, breach: RiskBreach, limit: ToleranceLimit) -> list[str]:
        """Record newly notified roles; returns only the roles added now."""
        wanted = list(limit.soft_notify_roles or [])
        if breach.breach_type == LimitBreachKind.HARD:
            wanted += list(limit.hard_notify_roles or [])

        already = list(breach.notified_roles or [])
        added = []
        for role in wanted:
            if role not in already and role not in added:
                added.append(role)
        if added:
            # Reassign so the JSON column is marked dirty
            breach.notified_roles = already + added
        return added

    def _apply_latches(self, breach: RiskBreach, limit: ToleranceLimit, at: datetime) -> bool:
        if breach.breach_type != LimitBreachKind.HARD:
            return False

        changed = False
        if not breach.escalated_to_cro:
            breach.escalated_to_cro = True
            breach.escalated_to_cro_at = at
            changed = True
        if limit.board_escalation_required and not breach.escalated_to_board:
            breach.escalated_to_board = True
            breach.escalated_to_board_at = at
            changed = True
        if limit.regulator_notification_required and not breach.regulator_notified:
            breach.regulator_notified = True
            breach.regulator_notified_at = at
            changed = True
        if changed:
            logger.warning(
                f"Hard limit breach {breach.id} escalated "
                f"(cro={breach.escalated_to_cro}, board={breach.escalated_to_board}, "
                f"regulator={breach.regulator_notified})"
            )
        return changed

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    async def acknowledge(self, principal: Principal, breach_id: UUID) -> RiskBreach:
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, (LimitBreachStatus.OPEN,), "acknowledge")

        breach.status = LimitBreachStatus.ACKNOWLEDGED
        breach.acknowledged_by = principal.user_id
        breach.acknowledged_at = utcnow()
        return await self._finish(principal, breach, before, AuditAction.ACKNOWLEDGE)

    async def start_investigation(self, principal: Principal, breach_id: UUID) -> RiskBreach:
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(
            breach, (LimitBreachStatus.OPEN, LimitBreachStatus.ACKNOWLEDGED), "investigate"
        )

        if breach.acknowledged_at is None:
            breach.acknowledged_by = principal.user_id
            breach.acknowledged_at = utcnow()
        breach.status = LimitBreachStatus.INVESTIGATING
        return await self._finish(principal, breach, before, AuditAction.UPDATE)

    async def start_remediation(self, principal: Principal, breach_id: UUID) -> RiskBreach:
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(
            breach,
            (
                LimitBreachStatus.OPEN,
                LimitBreachStatus.ACKNOWLEDGED,
                LimitBreachStatus.INVESTIGATING,
                LimitBreachStatus.REJECTED,
            ),
            "start remediation",
        )

        breach.status = LimitBreachStatus.REMEDIATION_IN_PROGRESS
        return await self._finish(principal, breach, before, AuditAction.BEGIN_REMEDIATION)

    async def request_tolerance_exception(
        self,
        principal: Principal,
        breach_id: UUID,
        input: ExceptionRequestInput,
    ) -> RiskBreach:
        """
        File a tolerance exception for a hard-limit breach.

        Flow:
        1. Validate justification, compensating controls and the validity window
        2. Check the breach is HARD and in a requestable state
        3. Move to PENDING_APPROVAL and record the request
        """
        now = utcnow()
        justification = (input.business_justification or "").strip()
        controls = (input.compensating_controls or "").strip()
        valid_until = as_utc(input.valid_until)

        if len(justification) < self._config.min_justification_length:
            raise ValidationError(
                f"Business justification must be at least "
                f"{self._config.min_justification_length} characters"
            )
        if not controls:
            raise ValidationError("Compensating controls are required")
        if valid_until is None or valid_until <= now:
            raise ValidationError("Exception validity must end in the future")
        if valid_until > now + timedelta(days=self._config.max_exception_days):
            raise ValidationError(
                f"Exception validity cannot exceed {self._config.max_exception_days} days"
            )

        breach = await self._get_breach(principal.organization_id, breach_id)
        if breach.breach_type != LimitBreachKind.HARD:
            raise ValidationError("Tolerance exceptions apply to hard-limit breaches only")
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, EXCEPTION_REQUESTABLE, "request an exception for")

        breach.status = LimitBreachStatus.PENDING_APPROVAL
        breach.business_justification = justification
        breach.compensating_controls = controls
        breach.valid_until = valid_until
        breach.exception_requested_by = principal.user_id
        breach.exception_requested_at = now
        breach.approval_decided_by = None
        breach.approval_decided_at = None
        breach.rejection_reason = None

        return await self._finish(
            principal,
            breach,
            before,
            AuditAction.REQUEST_EXCEPTION,
            details={"business_justification": justification, "valid_until": valid_until},
        )

    async def approve_exception(
        self,
        principal: Principal,
        breach_id: UUID,
        rationale: str | None = None,
    ) -> RiskBreach:
        """Approve a pending exception. Requires appetite-governance authority."""
        self._require_governance(principal)
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, (LimitBreachStatus.PENDING_APPROVAL,), "approve")

        if breach.exception_requested_by == principal.user_id:
            raise PermissionDeniedError("An exception cannot be approved by its requester")
        if as_utc(breach.valid_until) <= utcnow():
            raise ValidationError("Exception validity window has already passed")

        breach.status = LimitBreachStatus.APPROVED
        breach.approval_decided_by = principal.user_id
        breach.approval_decided_at = utcnow()
        breach.approval_rationale = rationale
        logger.info(f"Tolerance exception approved for breach {breach.id} until {breach.valid_until}")

        return await self._finish(
            principal, breach, before, AuditAction.APPROVE_EXCEPTION, details={"rationale": rationale}
        )

    async def reject_exception(
        self,
        principal: Principal,
        breach_id: UUID,
        reason: str,
    ) -> RiskBreach:
        """Reject a pending exception. The breach returns to the untolerated pool."""
        self._require_governance(principal)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, (LimitBreachStatus.PENDING_APPROVAL,), "reject")

        breach.status = LimitBreachStatus.REJECTED
        breach.approval_decided_by = principal.user_id
        breach.approval_decided_at = utcnow()
        breach.rejection_reason = reason.strip()

        return await self._finish(
            principal, breach, before, AuditAction.REJECT_EXCEPTION, details={"reason": reason.strip()}
        )

    async def resolve_limit_breach(
        self,
        principal: Principal,
        breach_id: UUID,
        notes: str,
    ) -> RiskBreach:
        """
        Resolve a limit breach.

        A hard breach can only be resolved once a measurement has brought
        the value back within bounds.
        """
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")

        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, OPEN_STATUSES, "resolve")

        if breach.breach_type == LimitBreachKind.HARD and breach.within_limits_at is None:
            raise WorkflowStateError(
                "Hard-limit breach is still outside its bounds",
                current_state=breach.status.value,
                entity_id=breach.id,
            )

        breach.status = LimitBreachStatus.RESOLVED
        breach.resolved_by = principal.user_id
        breach.resolved_at = utcnow()
        breach.resolution_notes = notes.strip()
        return await self._finish(principal, breach, before, AuditAction.RESOLVE)

    async def close_limit_breach(self, principal: Principal, breach_id: UUID) -> RiskBreach:
        breach = await self._get_breach(principal.organization_id, breach_id)
        before = field_snapshot(breach, SNAPSHOT_FIELDS)
        self._require_status(breach, (LimitBreachStatus.RESOLVED,), "close")
        breach.status = LimitBreachStatus.CLOSED
        return await self._finish(principal, breach, before, AuditAction.UPDATE)

    # =========================================================================
    # EXPIRY & OVERSIGHT
    # =========================================================================

    async def expire_exceptions(self, now: datetime | None = None) -> ExceptionExpiryStats:
        """
        Re-evaluate approved exceptions whose validity has ended.

        The breach is treated as if no exception existed: remediated
        breaches resolve, everything else reopens. Exception fields stay
        on the row for history.
        """
        now = now or utcnow()
        stats = ExceptionExpiryStats()

        result = await self._session.execute(
            select(RiskBreach)
            .where(
                RiskBreach.status == LimitBreachStatus.APPROVED,
                RiskBreach.valid_until <= now,
            )
            .with_for_update()
        )
        for breach in result.scalars().all():
            before = field_snapshot(breach, SNAPSHOT_FIELDS)
            breach.expired_exception_count += 1
            if breach.within_limits_at is not None:
                breach.status = LimitBreachStatus.RESOLVED
                breach.resolved_at = now
                breach.resolution_notes = "Exception expired after the value returned within limits"
                stats.resolved += 1
            else:
                breach.status = LimitBreachStatus.OPEN
                stats.reopened += 1
            stats.expired += 1

            await self._audit.emit(
                AuditEvent(
                    organization_id=breach.organization_id,
                    actor_id=None,  # System action
                    action=AuditAction.EXPIRE_EXCEPTION,
                    entity_type="risk_breach",
                    entity_id=breach.id,
                    before=before,
                    after=field_snapshot(breach, SNAPSHOT_FIELDS),
                    details={"valid_until": breach.valid_until},
                )
            )

        await self._session.flush()
        if stats.expired:
            logger.info(
                f"Expired {stats.expired} tolerance exceptions "
                f"({stats.reopened} reopened, {stats.resolved} resolved)"
            )
        return stats

    async def list_overdue_hard_breaches(
        self,
        organization_id: UUID | None = None,
        now: datetime | None = None,
    ) -> list[OverdueHardBreach]:
        """Hard breaches past their grace period with no exception in force."""
        now = now or utcnow()
        query = (
            select(RiskBreach, ToleranceLimit)
            .join(ToleranceLimit, RiskBreach.limit_id == ToleranceLimit.id)
            .where(
                RiskBreach.breach_type == LimitBreachKind.HARD,
                RiskBreach.status.in_(UNTOLERATED),
            )
            .order_by(RiskBreach.breach_date.asc())
        )
        if organization_id:
            query = query.where(RiskBreach.organization_id == organization_id)

        overdue = []
        for breach, limit in (await self._session.execute(query)).all():
            grace = (
                limit.exception_grace_days
                if limit.exception_grace_days is not None
                else self._config.default_grace_days
            )
            age = now - as_utc(breach.breach_date)
            if age >= timedelta(days=grace):
                overdue.append(
                    OverdueHardBreach(
                        breach=breach,
                        limit_name=limit.name,
                        grace_days=grace,
                        days_open=age.days,
                    )
                )
        return overdue

    async def list_open_limit_breaches(self, organization_id: UUID) -> Sequence[RiskBreach]:
        severity_rank = case(
            (RiskBreach.severity == Severity.CRITICAL, 1),
            (RiskBreach.severity == Severity.HIGH, 2),
            (RiskBreach.severity == Severity.MEDIUM, 3),
            else_=4,
        )
        result = await self._session.execute(
            select(RiskBreach)
            .where(
                RiskBreach.organization_id == organization_id,
                RiskBreach.status.in_(OPEN_STATUSES),
            )
            .order_by(severity_rank, RiskBreach.breach_date.asc())
        )
        return result.scalars().all()

    async def limit_breach_statistics(self, organization_id: UUID) -> LimitBreachStatistics:
        result = await self._session.execute(
            select(RiskBreach).where(RiskBreach.organization_id == organization_id)
        )
        breaches = result.scalars().all()

        by_type = {k.value: 0 for k in (LimitBreachKind.SOFT, LimitBreachKind.HARD)}
        by_severity = {s.value: 0 for s in Severity}
        open_count = 0
        resolution_days = []
        for breach in breaches:
            by_type[breach.breach_type.value] = by_type.get(breach.breach_type.value, 0) + 1
            by_severity[breach.severity.value] += 1
            if breach.is_open:
                open_count += 1
            if breach.resolved_at:
                delta = as_utc(breach.resolved_at) - as_utc(breach.breach_date)
                resolution_days.append(delta.total_seconds() / 86400)

        avg_days = round(sum(resolution_days) / len(resolution_days), 1) if resolution_days else 0.0
        return LimitBreachStatistics(
            total=len(breaches),
            open=open_count,
            by_type=by_type,
            by_severity=by_severity,
            avg_resolution_days=avg_days,
        )

    async def get_limit_breach(self, organization_id: UUID, breach_id: UUID) -> RiskBreach:
        return await self._get_breach(organization_id, breach_id, lock=False)

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    def _require_governance(self, principal: Principal) -> None:
        if not principal.has_any_role(self._config.governance_roles):
            raise PermissionDeniedError(
                "Appetite-governance authority is required to decide on exceptions"
            )

    @staticmethod
    def _require_status(
        breach: RiskBreach, allowed: Sequence[LimitBreachStatus], verb: str
    ) -> None:
        if breach.status not in allowed:
            raise WorkflowStateError(
                f"Cannot {verb} a limit breach in status {breach.status.value}",
                current_state=breach.status.value,
                entity_id=breach.id,
            )

    async def _get_limit(self, organization_id: UUID, limit_id: UUID) -> ToleranceLimit:
        result = await self._session.execute(
            select(ToleranceLimit).where(
                ToleranceLimit.id == limit_id,
                ToleranceLimit.organization_id == organization_id,
            )
        )
        limit = result.scalar_one_or_none()
        if not limit:
            raise NotFoundError("tolerance_limit", limit_id)
        return limit

    async def _get_breach(
        self, organization_id: UUID, breach_id: UUID, lock: bool = True
    ) -> RiskBreach:
        query = select(RiskBreach).where(
            RiskBreach.id == breach_id,
            RiskBreach.organization_id == organization_id,
        )
        if lock:
            query = query.with_for_update()
        breach = (await self._session.execute(query)).scalar_one_or_none()
        if not breach:
            raise NotFoundError("risk_breach", breach_id)
        return breach

    async def _finish(
        self,
        principal: Principal,
        breach: RiskBreach,
        before: dict,
        action: AuditAction,
        details: dict | None = None,
    ) -> RiskBreach:
        await self._session.flush()
        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=action,
                entity_type="risk_breach",
                entity_id=breach.id,
                before=before,
                after=field_snapshot(breach, SNAPSHOT_FIELDS),
                details=details or {},
            )
        )
        return breach
