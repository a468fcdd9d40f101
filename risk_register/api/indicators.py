"""
Indicator API Routes: KRI/KCI catalog, assignments to risks, tolerance limits.

Catalog definitions, threshold edits and tolerance limits are administrator
operations; assigning an indicator to a risk is open to any member.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from ..core import AdminDep, PrincipalDep
from ..schemas import (
    AssignmentCreate,
    AssignmentOverridesUpdate,
    AssignmentResponse,
    IndicatorCreate,
    IndicatorHealthResponse,
    IndicatorResponse,
    IndicatorThresholdsUpdate,
    ToleranceLimitCreate,
    ToleranceLimitResponse,
)
from .deps import BreachEngineDep, CatalogDep

router = APIRouter(tags=["indicators"])


# =============================================================================
# CATALOG
# =============================================================================


@router.post("/indicators", response_model=IndicatorResponse, status_code=status.HTTP_201_CREATED)
async def create_indicator(request: IndicatorCreate, principal: AdminDep, catalog: CatalogDep):
    return await catalog.create_indicator(principal, request)


@router.get("/indicators", response_model=list[IndicatorResponse])
async def list_indicators(principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.list_indicators(principal.organization_id)


@router.get(
    "/indicators/health",
    response_model=list[IndicatorHealthResponse],
    summary="Health of each active indicator",
    description="""
    Health over the last 30 days: `Breached` (an open breach),
    `Frequent Breaches` (3 or more in the last 7 days), `Stable` (any
    breach) or `Healthy`. The trend compares the last 7 days with the
    7 days before.
    """,
)
async def indicator_health(principal: PrincipalDep, engine: BreachEngineDep):
    health = await engine.indicator_health(principal.organization_id)
    return [IndicatorHealthResponse.model_validate(h) for h in health]


@router.get("/indicators/{indicator_id}", response_model=IndicatorResponse)
async def get_indicator(indicator_id: UUID, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.get_indicator(principal.organization_id, indicator_id)


@router.patch("/indicators/{indicator_id}", response_model=IndicatorResponse)
async def update_indicator_thresholds(
    indicator_id: UUID,
    request: IndicatorThresholdsUpdate,
    principal: AdminDep,
    catalog: CatalogDep,
):
    return await catalog.update_indicator_thresholds(principal, indicator_id, request)


# =============================================================================
# ASSIGNMENTS
# =============================================================================


@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_indicator(request: AssignmentCreate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.assign_indicator(principal, request)


@router.get("/assignments", response_model=list[AssignmentResponse])
async def list_assignments(
    principal: PrincipalDep,
    catalog: CatalogDep,
    risk_id: UUID | None = Query(default=None),
):
    return await catalog.list_assignments(principal.organization_id, risk_id=risk_id)


@router.put("/assignments/{assignment_id}/overrides", response_model=AssignmentResponse)
async def update_assignment_overrides(
    assignment_id: UUID,
    request: AssignmentOverridesUpdate,
    principal: PrincipalDep,
    catalog: CatalogDep,
):
    return await catalog.update_assignment_overrides(principal, assignment_id, request)


# =============================================================================
# TOLERANCE LIMITS
# =============================================================================


@router.post("/tolerance-limits", response_model=ToleranceLimitResponse, status_code=status.HTTP_201_CREATED)
async def create_tolerance_limit(request: ToleranceLimitCreate, principal: AdminDep, catalog: CatalogDep):
    return await catalog.create_tolerance_limit(principal, request)


@router.get("/tolerance-limits", response_model=list[ToleranceLimitResponse])
async def list_tolerance_limits(principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.list_tolerance_limits(principal.organization_id)
