"""
Measurement API Routes: the ingestion side of breach monitoring.

1. POST /measurements        - Record an indicator value for an assignment
2. POST /measurements/limits - Record a value for an appetite tolerance metric
"""

from fastapi import APIRouter, status

from ..core import PrincipalDep
from ..schemas import (
    EffectiveThresholdsResponse,
    LimitCheckResponse,
    LimitMeasurementCreate,
    MeasurementCreate,
    MeasurementResponse,
)
from ..services import LimitCheckResult, MeasurementResult
from .deps import BreachEngineDep, EscalationEngineDep

router = APIRouter(prefix="/measurements", tags=["measurements"])


def build_limit_check(check: LimitCheckResult) -> LimitCheckResponse:
    return LimitCheckResponse(
        limit_id=check.limit_id,
        kind=check.evaluation.kind,
        limit_value=check.evaluation.limit_value,
        variance_amount=check.evaluation.variance_amount,
        variance_percentage=check.evaluation.variance_percentage,
        risk_breach_id=check.risk_breach_id,
        opened=check.opened,
        escalated=check.escalated,
        notified_roles=check.notified_roles,
    )


def build_measurement_response(result: MeasurementResult) -> MeasurementResponse:
    return MeasurementResponse(
        assignment_id=result.assignment_id,
        level=result.level,
        undetermined=result.undetermined,
        thresholds=EffectiveThresholdsResponse.model_validate(result.thresholds),
        breach_id=result.breach_id,
        breach_opened=result.breach_opened,
        limit_breach_ids=result.limit_breach_ids,
        limit_checks=[build_limit_check(c) for c in result.limit_checks],
        configuration_error=str(result.configuration_error) if result.configuration_error else None,
        late=result.late,
    )


@router.post(
    "",
    response_model=MeasurementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record an indicator measurement",
    description="""
    Record a measured value for an (indicator, risk) assignment.

    The value is classified against the effective thresholds (assignment
    override, else catalog default). A breaching value opens a breach or
    updates the open one; tolerance limits bound to the indicator are
    checked in the same transaction.

    An assignment without any resolvable threshold is stored as
    `undetermined` and the configuration problem is reported in the body.
    Tolerance limits are still checked.

    A value observed before the latest measurement is classified and
    returned with `late: true` but does not change the assignment or its
    breach. Deprecated indicators cannot be measured (400).

    Concurrent writes to the same assignment return 409 Conflict; retry.
    """,
)
async def record_measurement(
    request: MeasurementCreate,
    principal: PrincipalDep,
    engine: BreachEngineDep,
):
    result = await engine.record_measurement(
        organization_id=principal.organization_id,
        assignment_id=request.assignment_id,
        value=request.value,
        observed_at=request.observed_at,
        actor_id=principal.user_id,
    )
    return build_measurement_response(result)


@router.post(
    "/limits",
    response_model=LimitCheckResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a tolerance metric value",
)
async def record_limit_measurement(
    request: LimitMeasurementCreate,
    principal: PrincipalDep,
    engine: EscalationEngineDep,
):
    check = await engine.record_limit_measurement(
        principal, request.limit_id, request.value, request.observed_at
    )
    return build_limit_check(check)
