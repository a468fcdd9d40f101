"""
Breach API Routes: triage views and the indicator breach workflow.

    active --acknowledge--> investigating --remediate--> mitigating --resolve--> resolved
    any open state --false-positive--> false_positive
"""

from uuid import UUID

from fastapi import APIRouter

from ..core import PrincipalDep
from ..models import Severity
from ..schemas import (
    ActiveBreachResponse,
    BreachActionAssign,
    BreachAnalysisUpdate,
    BreachNotes,
    BreachPriorityUpdate,
    BreachRemediation,
    BreachResolve,
    BreachResponse,
    IndicatorTrendResponse,
)
from .deps import BreachEngineDep

router = APIRouter(prefix="/breaches", tags=["breaches"])


# =============================================================================
# VIEWS
# =============================================================================


@router.get(
    "/active",
    response_model=list[ActiveBreachResponse],
    summary="Open breaches, most urgent first",
    description="""
    Open indicator breaches ordered by priority (critical first) and then
    by breach date (oldest first). Each row carries hours active and an
    urgency label: `Overdue` past 48 hours, `Urgent` past 24, else `Normal`.
    """,
)
async def list_active_breaches(principal: PrincipalDep, engine: BreachEngineDep):
    views = await engine.list_active_breaches(principal.organization_id)
    return [
        ActiveBreachResponse(
            breach=BreachResponse.model_validate(v.breach),
            indicator_code=v.indicator_code,
            indicator_name=v.indicator_name,
            risk_code=v.risk_code,
            risk_title=v.risk_title,
            hours_active=v.hours_active,
            urgency=v.urgency,
        )
        for v in views
    ]


@router.get(
    "/trends",
    response_model=list[IndicatorTrendResponse],
    summary="Breach aggregates per indicator",
)
async def breach_trends(principal: PrincipalDep, engine: BreachEngineDep):
    trends = await engine.breach_trends(principal.organization_id)
    return [IndicatorTrendResponse.model_validate(t) for t in trends]


@router.get("/{breach_id}", response_model=BreachResponse)
async def get_breach(breach_id: UUID, principal: PrincipalDep, engine: BreachEngineDep):
    return await engine.get_breach(principal.organization_id, breach_id)


# =============================================================================
# WORKFLOW
# =============================================================================


@router.post(
    "/{breach_id}/acknowledge",
    response_model=BreachResponse,
    summary="Acknowledge a breach (active -> investigating)",
)
async def acknowledge_breach(
    breach_id: UUID,
    request: BreachNotes,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.acknowledge_breach(principal, breach_id, notes=request.notes)


@router.post(
    "/{breach_id}/remediate",
    response_model=BreachResponse,
    summary="Begin remediation (-> mitigating)",
)
async def begin_remediation(
    breach_id: UUID,
    request: BreachRemediation,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.begin_remediation(principal, breach_id, action_plan=request.action_plan)


@router.post(
    "/{breach_id}/resolve",
    response_model=BreachResponse,
    summary="Resolve a breach",
    description="Resolution notes are mandatory. The breach duration is fixed at this point.",
)
async def resolve_breach(
    breach_id: UUID,
    request: BreachResolve,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.resolve_breach(principal, breach_id, request.notes)


@router.post(
    "/{breach_id}/false-positive",
    response_model=BreachResponse,
    summary="Mark a breach as a false positive",
)
async def mark_false_positive(
    breach_id: UUID,
    request: BreachNotes,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.mark_false_positive(principal, breach_id, notes=request.notes)


@router.post("/{breach_id}/priority", response_model=BreachResponse)
async def set_priority(
    breach_id: UUID,
    request: BreachPriorityUpdate,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    """Pin a priority; automatic priority no longer applies to this breach."""
    return await engine.set_priority(principal, breach_id, Severity(request.priority))


@router.post("/{breach_id}/action", response_model=BreachResponse)
async def assign_action(
    breach_id: UUID,
    request: BreachActionAssign,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.assign_action(
        principal,
        breach_id,
        owner_id=request.owner_id,
        action_plan=request.action_plan,
        due_date=request.due_date,
    )


@router.post("/{breach_id}/analysis", response_model=BreachResponse)
async def record_analysis(
    breach_id: UUID,
    request: BreachAnalysisUpdate,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    return await engine.record_analysis(
        principal,
        breach_id,
        root_cause_analysis=request.root_cause_analysis,
        preventive_actions=request.preventive_actions,
    )
