"""
Risk API Routes: the risk register and its links to causes, impacts and controls.

Every risk with linked root causes (or impacts) has exactly one primary
row; linking, re-pointing and unlinking keep that true.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from ..core import PrincipalDep
from ..schemas import (
    CatalogEntryCreate,
    CatalogEntryResponse,
    ControlCreate,
    ControlLinkCreate,
    ControlLinkResponse,
    ControlResponse,
    ImpactLinkCreate,
    ImpactLinkResponse,
    RiskCreate,
    RiskResponse,
    RiskUpdate,
    RootCauseLinkCreate,
    RootCauseLinkResponse,
)
from .deps import CatalogDep, EnforcerDep

router = APIRouter(tags=["risks"])


# =============================================================================
# REGISTERS
# =============================================================================


@router.post("/risks", response_model=RiskResponse, status_code=status.HTTP_201_CREATED)
async def create_risk(request: RiskCreate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.create_risk(principal, request)


@router.get("/risks", response_model=list[RiskResponse])
async def list_risks(
    principal: PrincipalDep,
    catalog: CatalogDep,
    include_closed: bool = Query(default=False),
):
    return await catalog.list_risks(principal.organization_id, include_closed=include_closed)


@router.get("/risks/{risk_id}", response_model=RiskResponse)
async def get_risk(risk_id: UUID, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.get_risk(principal.organization_id, risk_id)


@router.patch("/risks/{risk_id}", response_model=RiskResponse)
async def update_risk(risk_id: UUID, request: RiskUpdate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.update_risk(principal, risk_id, request)


@router.post("/root-causes", response_model=CatalogEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_root_cause(request: CatalogEntryCreate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.create_root_cause(principal, request)


@router.post("/impacts", response_model=CatalogEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_impact(request: CatalogEntryCreate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.create_impact(principal, request)


@router.post("/controls", response_model=ControlResponse, status_code=status.HTTP_201_CREATED)
async def create_control(request: ControlCreate, principal: PrincipalDep, catalog: CatalogDep):
    return await catalog.create_control(principal, request)


# =============================================================================
# LINKS
# =============================================================================


@router.post(
    "/risks/{risk_id}/root-causes",
    response_model=RootCauseLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Link a root cause (or update the existing link)",
    description="""
    Setting `is_primary` demotes the current primary in the same
    transaction. The first root cause linked to a risk always becomes
    primary.
    """,
)
async def link_root_cause(
    risk_id: UUID, request: RootCauseLinkCreate, principal: PrincipalDep, enforcer: EnforcerDep
):
    return await enforcer.link_root_cause(
        principal,
        risk_id,
        request.root_cause_id,
        is_primary=request.is_primary,
        contribution_percentage=request.contribution_percentage,
        rationale=request.rationale,
    )


@router.post("/risks/{risk_id}/root-causes/{root_cause_id}/primary", response_model=RootCauseLinkResponse)
async def set_primary_root_cause(
    risk_id: UUID, root_cause_id: UUID, principal: PrincipalDep, enforcer: EnforcerDep
):
    return await enforcer.set_primary_root_cause(principal, risk_id, root_cause_id)


@router.delete("/risks/{risk_id}/root-causes/{root_cause_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_root_cause(
    risk_id: UUID, root_cause_id: UUID, principal: PrincipalDep, enforcer: EnforcerDep
):
    await enforcer.unlink_root_cause(principal, risk_id, root_cause_id)


@router.post(
    "/risks/{risk_id}/impacts",
    response_model=ImpactLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Link an impact (or update the existing link)",
)
async def link_impact(
    risk_id: UUID, request: ImpactLinkCreate, principal: PrincipalDep, enforcer: EnforcerDep
):
    return await enforcer.link_impact(
        principal,
        risk_id,
        request.impact_id,
        is_primary=request.is_primary,
        severity_percentage=request.severity_percentage,
        rationale=request.rationale,
    )


@router.post("/risks/{risk_id}/impacts/{impact_id}/primary", response_model=ImpactLinkResponse)
async def set_primary_impact(
    risk_id: UUID, impact_id: UUID, principal: PrincipalDep, enforcer: EnforcerDep
):
    return await enforcer.set_primary_impact(principal, risk_id, impact_id)


@router.delete("/risks/{risk_id}/impacts/{impact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_impact(risk_id: UUID, impact_id: UUID, principal: PrincipalDep, enforcer: EnforcerDep):
    await enforcer.unlink_impact(principal, risk_id, impact_id)


@router.post(
    "/risks/{risk_id}/controls",
    response_model=ControlLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def link_control(
    risk_id: UUID, request: ControlLinkCreate, principal: PrincipalDep, catalog: CatalogDep
):
    return await catalog.link_control(principal, risk_id, request)
