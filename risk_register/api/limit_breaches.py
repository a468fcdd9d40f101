"""
Limit Breach API Routes: tolerance-limit breaches and the exception workflow.

Exception decisions require an appetite-governance role (configured via
APPETITE_GOVERNANCE_ROLES); the requester can never approve their own
exception.
"""

from uuid import UUID

from fastapi import APIRouter

from ..core import PrincipalDep
from ..schemas import (
    BreachResolve,
    ExceptionApproval,
    ExceptionRejection,
    LimitBreachStatisticsResponse,
    OverdueHardBreachResponse,
    RiskBreachResponse,
    ToleranceExceptionCreate,
)
from ..services import ExceptionRequestInput
from .deps import EscalationEngineDep

router = APIRouter(prefix="/limit-breaches", tags=["limit-breaches"])


# =============================================================================
# VIEWS
# =============================================================================


@router.get("", response_model=list[RiskBreachResponse], summary="Open limit breaches")
async def list_open_limit_breaches(principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.list_open_limit_breaches(principal.organization_id)


@router.get(
    "/overdue",
    response_model=list[OverdueHardBreachResponse],
    summary="Hard breaches past their grace period without an exception",
)
async def list_overdue_hard_breaches(principal: PrincipalDep, engine: EscalationEngineDep):
    overdue = await engine.list_overdue_hard_breaches(principal.organization_id)
    return [
        OverdueHardBreachResponse(
            breach=RiskBreachResponse.model_validate(o.breach),
            limit_name=o.limit_name,
            grace_days=o.grace_days,
            days_open=o.days_open,
        )
        for o in overdue
    ]


@router.get("/statistics", response_model=LimitBreachStatisticsResponse)
async def limit_breach_statistics(principal: PrincipalDep, engine: EscalationEngineDep):
    stats = await engine.limit_breach_statistics(principal.organization_id)
    return LimitBreachStatisticsResponse.model_validate(stats)


@router.get("/{breach_id}", response_model=RiskBreachResponse)
async def get_limit_breach(breach_id: UUID, principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.get_limit_breach(principal.organization_id, breach_id)


# =============================================================================
# WORKFLOW
# =============================================================================


@router.post("/{breach_id}/acknowledge", response_model=RiskBreachResponse)
async def acknowledge(breach_id: UUID, principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.acknowledge(principal, breach_id)


@router.post("/{breach_id}/investigate", response_model=RiskBreachResponse)
async def start_investigation(breach_id: UUID, principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.start_investigation(principal, breach_id)


@router.post("/{breach_id}/remediate", response_model=RiskBreachResponse)
async def start_remediation(breach_id: UUID, principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.start_remediation(principal, breach_id)


@router.post(
    "/{breach_id}/exception",
    response_model=RiskBreachResponse,
    summary="Request a tolerance exception for a hard-limit breach",
    description="""
    File a business justification, compensating controls and an end of
    validity. `valid_until` must lie in the future. The breach moves to
    `pending_approval`.
    """,
)
async def request_tolerance_exception(
    breach_id: UUID,
    request: ToleranceExceptionCreate,
    principal: PrincipalDep,
    engine: EscalationEngineDep,
):
    return await engine.request_tolerance_exception(
        principal,
        breach_id,
        ExceptionRequestInput(
            business_justification=request.business_justification,
            compensating_controls=request.compensating_controls,
            valid_until=request.valid_until,
        ),
    )


@router.post("/{breach_id}/approve", response_model=RiskBreachResponse)
async def approve_exception(
    breach_id: UUID,
    request: ExceptionApproval,
    principal: PrincipalDep,
    engine: EscalationEngineDep,
):
    return await engine.approve_exception(principal, breach_id, rationale=request.rationale)


@router.post("/{breach_id}/reject", response_model=RiskBreachResponse)
async def reject_exception(
    breach_id: UUID,
    request: ExceptionRejection,
    principal: PrincipalDep,
    engine: EscalationEngineDep,
):
    return await engine.reject_exception(principal, breach_id, request.reason)


@router.post("/{breach_id}/resolve", response_model=RiskBreachResponse)
async def resolve_limit_breach(
    breach_id: UUID,
    request: BreachResolve,
    principal: PrincipalDep,
    engine: EscalationEngineDep,
):
    return await engine.resolve_limit_breach(principal, breach_id, request.notes)


@router.post("/{breach_id}/close", response_model=RiskBreachResponse)
async def close_limit_breach(breach_id: UUID, principal: PrincipalDep, engine: EscalationEngineDep):
    return await engine.close_limit_breach(principal, breach_id)
