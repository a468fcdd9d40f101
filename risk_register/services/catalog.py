"""Catalog service: risks, causes, impacts, controls, indicators and limits.

These are the static registers the engines read from. Indicator definitions,
threshold edits and tolerance limits are administrator operations.
"""

from types import SimpleNamespace
from typing import Sequence
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..core.principal import Principal
from ..models import (
    AuditAction,
    Control,
    Direction,
    Impact,
    IndicatorAssignment,
    IndicatorDefinition,
    IndicatorStatus,
    IndicatorType,
    LimitDirection,
    MeasurementFrequency,
    Risk,
    RiskControl,
    RiskStatus,
    RootCause,
    ToleranceLimit,
)
from ..schemas import (
    AssignmentCreate,
    AssignmentOverridesUpdate,
    CatalogEntryCreate,
    ControlCreate,
    ControlLinkCreate,
    IndicatorCreate,
    IndicatorThresholdsUpdate,
    RiskCreate,
    RiskUpdate,
    ToleranceLimitCreate,
)
from .audit import AuditEvent, AuditRecorder, field_snapshot
from .errors import (
    ConcurrencyConflict,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .thresholds import EffectiveThresholds, resolve_thresholds

logger = logging.getLogger(__name__)

RISK_FIELDS = (
    "risk_code",
    "title",
    "status",
    "is_active",
    "likelihood_inherent",
    "impact_inherent",
    "likelihood_residual",
    "impact_residual",
)
REQUIRED_RISK_FIELDS = {"title", "status", "is_active", "likelihood_inherent", "impact_inherent"}
INDICATOR_FIELDS = ("code", "threshold_warning", "threshold_critical", "direction", "target_value", "status")
ASSIGNMENT_FIELDS = ("warning_override", "critical_override", "version")
_NO_OVERRIDES = SimpleNamespace(warning_override=None, critical_override=None)


class CatalogService:
    """Service for the organization's registers."""

    def __init__(self, session: AsyncSession, audit: AuditRecorder | None = None):
        self.session = session
        self._audit = audit or AuditRecorder(session)

    # =========================================================================
    # RISKS
    # =========================================================================

    async def create_risk(self, principal: Principal, data: RiskCreate) -> Risk:
        await self._ensure_unique_code(Risk, Risk.risk_code, principal.organization_id, data.risk_code)

        risk = Risk(
            organization_id=principal.organization_id,
            risk_code=data.risk_code,
            title=data.title,
            description=data.description,
            category=data.category,
            division=data.division,
            department=data.department,
            owner=data.owner,
            status=RiskStatus(data.status),
            is_active=True,
            likelihood_inherent=data.likelihood_inherent,
            impact_inherent=data.impact_inherent,
            likelihood_residual=data.likelihood_residual,
            impact_residual=data.impact_residual,
        )
        self.session.add(risk)
        await self.session.flush()
        await self._emit(principal, AuditAction.CREATE, "risk", risk.id, after=field_snapshot(risk, RISK_FIELDS))
        return risk

    async def update_risk(self, principal: Principal, risk_id: UUID, data: RiskUpdate) -> Risk:
        risk = await self.get_risk(principal.organization_id, risk_id)
        before = field_snapshot(risk, RISK_FIELDS)

        changes = data.model_dump(exclude_unset=True)
        for name, value in changes.items():
            if value is None and name in REQUIRED_RISK_FIELDS:
                continue
            if name == "status":
                value = RiskStatus(value)
            setattr(risk, name, value)

        await self.session.flush()
        await self._emit(
            principal, AuditAction.UPDATE, "risk", risk.id,
            before=before, after=field_snapshot(risk, RISK_FIELDS),
        )
        return risk

    async def get_risk(self, organization_id: UUID, risk_id: UUID) -> Risk:
        result = await self.session.execute(
            select(Risk).where(Risk.id == risk_id, Risk.organization_id == organization_id)
        )
        risk = result.scalar_one_or_none()
        if not risk:
            raise NotFoundError("risk", risk_id)
        return risk

    async def list_risks(self, organization_id: UUID, include_closed: bool = False) -> Sequence[Risk]:
        query = select(Risk).where(Risk.organization_id == organization_id)
        if not include_closed:
            query = query.where(Risk.is_active.is_(True), Risk.status != RiskStatus.CLOSED)
        result = await self.session.execute(query.order_by(Risk.risk_code.asc()))
        return result.scalars().all()

    # =========================================================================
    # ROOT CAUSES / IMPACTS / CONTROLS
    # =========================================================================

    async def create_root_cause(self, principal: Principal, data: CatalogEntryCreate) -> RootCause:
        await self._ensure_unique_code(RootCause, RootCause.code, principal.organization_id, data.code)
        cause = RootCause(organization_id=principal.organization_id, **data.model_dump())
        self.session.add(cause)
        await self.session.flush()
        await self._emit(principal, AuditAction.CREATE, "root_cause", cause.id, after={"code": cause.code})
        return cause

    async def create_impact(self, principal: Principal, data: CatalogEntryCreate) -> Impact:
        await self._ensure_unique_code(Impact, Impact.code, principal.organization_id, data.code)
        impact = Impact(organization_id=principal.organization_id, **data.model_dump())
        self.session.add(impact)
        await self.session.flush()
        await self._emit(principal, AuditAction.CREATE, "impact", impact.id, after={"code": impact.code})
        return impact

    async def create_control(self, principal: Principal, data: ControlCreate) -> Control:
        await self._ensure_unique_code(Control, Control.code, principal.organization_id, data.code)
        control = Control(organization_id=principal.organization_id, **data.model_dump())
        self.session.add(control)
        await self.session.flush()
        await self._emit(principal, AuditAction.CREATE, "control", control.id, after={"code": control.code})
        return control

    async def link_control(self, principal: Principal, risk_id: UUID, data: ControlLinkCreate) -> RiskControl:
        """Controls carry no primary flag, so this is a plain junction insert."""
        await self.get_risk(principal.organization_id, risk_id)
        control = await self.session.get(Control, data.control_id)
        if not control or control.organization_id != principal.organization_id:
            raise NotFoundError("control", data.control_id)

        existing = (
            await self.session.execute(
                select(RiskControl).where(
                    RiskControl.risk_id == risk_id,
                    RiskControl.control_id == data.control_id,
                )
            )
        ).scalar_one_or_none()
        if existing:
            raise ValidationError(f"Control {control.code} is already linked to this risk")

        link = RiskControl(risk_id=risk_id, control_id=data.control_id, notes=data.notes)
        self.session.add(link)
        await self.session.flush()
        await self._emit(
            principal, AuditAction.LINK, "risk_control", link.id,
            after={"risk_id": risk_id, "control_id": data.control_id},
        )
        return link

    # =========================================================================
    # INDICATORS
    # =========================================================================

    async def create_indicator(self, principal: Principal, data: IndicatorCreate) -> IndicatorDefinition:
        self._require_admin(principal)
        self._check_threshold_order(
            EffectiveThresholds(data.threshold_warning, data.threshold_critical, Direction(data.direction)),
            "indicator",
        )
        await self._ensure_unique_code(
            IndicatorDefinition, IndicatorDefinition.code, principal.organization_id, data.code
        )

        indicator = IndicatorDefinition(
            organization_id=principal.organization_id,
            code=data.code,
            indicator_type=IndicatorType(data.indicator_type),
            name=data.name,
            description=data.description,
            unit=data.unit,
            frequency=MeasurementFrequency(data.frequency) if data.frequency else None,
            threshold_warning=data.threshold_warning,
            threshold_critical=data.threshold_critical,
            direction=Direction(data.direction),
            target_value=data.target_value,
            data_source=data.data_source,
            calculation_method=data.calculation_method,
            status=IndicatorStatus.ACTIVE,
        )
        self.session.add(indicator)
        await self.session.flush()
        await self._emit(
            principal, AuditAction.CREATE, "indicator", indicator.id,
            after=field_snapshot(indicator, INDICATOR_FIELDS),
        )
        return indicator

    async def update_indicator_thresholds(
        self, principal: Principal, indicator_id: UUID, data: IndicatorThresholdsUpdate
    ) -> IndicatorDefinition:
        """Edit catalog defaults. Breach rows already copied their thresholds."""
        self._require_admin(principal)
        indicator = await self.get_indicator(principal.organization_id, indicator_id)
        before = field_snapshot(indicator, INDICATOR_FIELDS)

        changes = data.model_dump(exclude_unset=True)
        if changes.get("direction") is not None:
            changes["direction"] = Direction(changes["direction"])
        if changes.get("status") is not None:
            changes["status"] = IndicatorStatus(changes["status"])
        await self._check_catalog_change(indicator, changes)
        for name, value in changes.items():
            if name in ("direction", "status") and value is None:
                continue
            setattr(indicator, name, value)

        await self.session.flush()
        await self._emit(
            principal, AuditAction.UPDATE, "indicator", indicator.id,
            before=before, after=field_snapshot(indicator, INDICATOR_FIELDS),
        )
        return indicator

    async def get_indicator(self, organization_id: UUID, indicator_id: UUID) -> IndicatorDefinition:
        result = await self.session.execute(
            select(IndicatorDefinition).where(
                IndicatorDefinition.id == indicator_id,
                IndicatorDefinition.organization_id == organization_id,
            )
        )
        indicator = result.scalar_one_or_none()
        if not indicator:
            raise NotFoundError("indicator", indicator_id)
        return indicator

    async def list_indicators(self, organization_id: UUID) -> Sequence[IndicatorDefinition]:
        result = await self.session.execute(
            select(IndicatorDefinition)
            .where(IndicatorDefinition.organization_id == organization_id)
            .order_by(IndicatorDefinition.code.asc())
        )
        return result.scalars().all()

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    async def assign_indicator(self, principal: Principal, data: AssignmentCreate) -> IndicatorAssignment:
        await self.get_risk(principal.organization_id, data.risk_id)
        indicator = await self.get_indicator(principal.organization_id, data.indicator_id)

        existing = (
            await self.session.execute(
                select(IndicatorAssignment.id).where(
                    IndicatorAssignment.risk_id == data.risk_id,
                    IndicatorAssignment.indicator_id == data.indicator_id,
                )
            )
        ).scalar_one_or_none()
        if existing:
            raise ValidationError(f"Indicator {indicator.code} is already assigned to this risk")
        self._check_threshold_order(resolve_thresholds(data, indicator), "assignment")

        assignment = IndicatorAssignment(
            organization_id=principal.organization_id,
            risk_id=data.risk_id,
            indicator_id=data.indicator_id,
            warning_override=data.warning_override,
            critical_override=data.critical_override,
            notes=data.notes,
            assigned_by=principal.user_id,
        )
        self.session.add(assignment)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ValidationError(f"Indicator {indicator.code} is already assigned to this risk") from e

        await self._emit(
            principal, AuditAction.CREATE, "indicator_assignment", assignment.id,
            after={"risk_id": data.risk_id, "indicator_id": data.indicator_id, **field_snapshot(assignment, ASSIGNMENT_FIELDS)},
        )
        return assignment

    async def update_assignment_overrides(
        self, principal: Principal, assignment_id: UUID, data: AssignmentOverridesUpdate
    ) -> IndicatorAssignment:
        assignment = await self.get_assignment(principal.organization_id, assignment_id)
        before = field_snapshot(assignment, ASSIGNMENT_FIELDS)
        self._check_threshold_order(resolve_thresholds(data, assignment.indicator), "assignment")

        assignment.warning_override = data.warning_override
        assignment.critical_override = data.critical_override
        try:
            await self.session.flush()
        except StaleDataError as e:
            raise ConcurrencyConflict(f"Assignment {assignment_id} was modified concurrently") from e

        await self._emit(
            principal, AuditAction.UPDATE, "indicator_assignment", assignment.id,
            before=before, after=field_snapshot(assignment, ASSIGNMENT_FIELDS),
        )
        return assignment

    async def get_assignment(self, organization_id: UUID, assignment_id: UUID) -> IndicatorAssignment:
        result = await self.session.execute(
            select(IndicatorAssignment).where(
                IndicatorAssignment.id == assignment_id,
                IndicatorAssignment.organization_id == organization_id,
            )
        )
        assignment = result.unique().scalar_one_or_none()
        if not assignment:
            raise NotFoundError("indicator_assignment", assignment_id)
        return assignment

    async def list_assignments(
        self, organization_id: UUID, risk_id: UUID | None = None
    ) -> Sequence[IndicatorAssignment]:
        query = select(IndicatorAssignment).where(IndicatorAssignment.organization_id == organization_id)
        if risk_id:
            query = query.where(IndicatorAssignment.risk_id == risk_id)
        result = await self.session.execute(query.order_by(IndicatorAssignment.created_at.asc()))
        return result.unique().scalars().all()

    # =========================================================================
    # TOLERANCE LIMITS
    # =========================================================================

    async def create_tolerance_limit(self, principal: Principal, data: ToleranceLimitCreate) -> ToleranceLimit:
        self._require_admin(principal)
        if data.indicator_id is not None:
            await self.get_indicator(principal.organization_id, data.indicator_id)

        limit = ToleranceLimit(
            organization_id=principal.organization_id,
            name=data.name,
            tolerance_metric=data.tolerance_metric,
            indicator_id=data.indicator_id,
            direction=LimitDirection(data.direction),
            soft_limit=data.soft_limit,
            hard_limit=data.hard_limit,
            lower_soft_limit=data.lower_soft_limit,
            lower_hard_limit=data.lower_hard_limit,
            soft_notify_roles=list(data.soft_notify_roles),
            hard_notify_roles=list(data.hard_notify_roles),
            board_escalation_required=data.board_escalation_required,
            regulator_notification_required=data.regulator_notification_required,
            exception_grace_days=data.exception_grace_days,
            is_active=True,
        )
        self.session.add(limit)
        await self.session.flush()
        logger.info(f"Tolerance limit '{limit.name}' created for org {principal.organization_id}")
        await self._emit(
            principal, AuditAction.CREATE, "tolerance_limit", limit.id,
            after={"name": limit.name, "soft_limit": limit.soft_limit, "hard_limit": limit.hard_limit},
        )
        return limit

    async def list_tolerance_limits(self, organization_id: UUID) -> Sequence[ToleranceLimit]:
        result = await self.session.execute(
            select(ToleranceLimit)
            .where(ToleranceLimit.organization_id == organization_id)
            .order_by(ToleranceLimit.name.asc())
        )
        return result.scalars().all()

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _require_admin(principal: Principal) -> None:
        if not principal.is_admin:
            raise PermissionDeniedError("Only administrators can change the indicator catalog")

    @staticmethod
    def _check_threshold_order(thresholds: EffectiveThresholds, scope: str) -> None:
        if not thresholds.is_ordered:
            raise ValidationError(
                f"Inverted {scope} thresholds: critical {thresholds.critical} is less extreme than "
                f"warning {thresholds.warning} for direction '{thresholds.direction.value}'"
            )

    async def _check_catalog_change(self, indicator: IndicatorDefinition, changes: dict) -> None:
        """Reject a catalog edit that inverts the catalog pair or any assignment's effective pair."""
        proposed = SimpleNamespace(
            threshold_warning=changes.get("threshold_warning", indicator.threshold_warning),
            threshold_critical=changes.get("threshold_critical", indicator.threshold_critical),
            direction=changes.get("direction") or indicator.direction,
        )
        self._check_threshold_order(resolve_thresholds(_NO_OVERRIDES, proposed), "indicator")

        result = await self.session.execute(
            select(IndicatorAssignment).where(IndicatorAssignment.indicator_id == indicator.id)
        )
        for assignment in result.unique().scalars():
            self._check_threshold_order(resolve_thresholds(assignment, proposed), "assignment")

    async def _ensure_unique_code(self, model: type, column, organization_id: UUID, code: str) -> None:
        result = await self.session.execute(
            select(model.id).where(model.organization_id == organization_id, column == code)
        )
        if result.scalar_one_or_none():
            raise ValidationError(f"Code '{code}' is already in use")

    async def _emit(
        self,
        principal: Principal,
        action: AuditAction,
        entity_type: str,
        entity_id: UUID,
        before: dict | None = None,
        after: dict | None = None,
    ) -> None:
        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before=before,
                after=after,
            )
        )
