"""
Period API Routes: committing quarters and reading risk history.

Committing is an administrator action. Once a quarter is committed its
history rows never change, and committing it again returns 409 Conflict.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from ..core import AdminDep, PrincipalDep
from ..schemas import (
    ActivePeriodResponse,
    InvariantRepairResponse,
    PeriodCommitCreate,
    PeriodCommitResponse,
    PeriodCommitResultResponse,
    PeriodComparisonResponse,
    PeriodTrendResponse,
    RiskChangeResponse,
    RiskHistoryResponse,
)
from ..services import Period, format_period, parse_period
from .deps import SnapshotterDep

router = APIRouter(prefix="/periods", tags=["periods"])


@router.get("/active", response_model=ActivePeriodResponse)
async def get_active_period(principal: PrincipalDep, snapshotter: SnapshotterDep):
    active = await snapshotter.get_active_period(principal.organization_id)
    previous = None
    if active.previous_period_year is not None and active.previous_period_quarter is not None:
        previous = format_period(Period(active.previous_period_year, active.previous_period_quarter))
    return ActivePeriodResponse(
        current_period=format_period(Period(active.current_period_year, active.current_period_quarter)),
        current_period_year=active.current_period_year,
        current_period_quarter=active.current_period_quarter,
        previous_period=previous,
        period_started_at=active.period_started_at,
    )


@router.get("", response_model=list[PeriodCommitResponse], summary="Committed periods, newest first")
async def list_committed_periods(principal: PrincipalDep, snapshotter: SnapshotterDep):
    return await snapshotter.list_committed_periods(principal.organization_id)


@router.post(
    "/commit",
    response_model=PeriodCommitResultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Commit a quarter",
    description="""
    Freeze every active risk into an immutable history row for the quarter
    and advance the organization's active period.

    Primary root cause/impact inconsistencies are repaired first and
    reported in `repairs`. A quarter that is already committed, or a commit
    already in progress, returns 409 Conflict.
    """,
)
async def commit_period(request: PeriodCommitCreate, principal: AdminDep, snapshotter: SnapshotterDep):
    result = await snapshotter.commit_period(principal, request.year, request.quarter, notes=request.notes)
    return PeriodCommitResultResponse(
        period=format_period(result.period),
        next_period=format_period(result.next_period),
        commit=PeriodCommitResponse.model_validate(result.commit),
        risks_snapshotted=result.risks_snapshotted,
        repairs=[InvariantRepairResponse.model_validate(r) for r in result.repairs],
    )


@router.get("/history", response_model=list[RiskHistoryResponse])
async def get_history_for_period(
    principal: PrincipalDep,
    snapshotter: SnapshotterDep,
    period: str = Query(..., description="Period label, e.g. 'Q1 2025'"),
):
    return await snapshotter.get_history_for_period(principal.organization_id, parse_period(period))


@router.get("/risks/{risk_id}/history", response_model=list[RiskHistoryResponse])
async def get_risk_history(risk_id: UUID, principal: PrincipalDep, snapshotter: SnapshotterDep):
    return await snapshotter.get_risk_history(principal.organization_id, risk_id)


@router.get("/compare", response_model=PeriodComparisonResponse)
async def compare_periods(
    principal: PrincipalDep,
    snapshotter: SnapshotterDep,
    period1: str = Query(..., description="Earlier period, e.g. 'Q1 2025'"),
    period2: str = Query(..., description="Later period, e.g. 'Q2 2025'"),
):
    comparison = await snapshotter.compare_periods(
        principal.organization_id, parse_period(period1), parse_period(period2)
    )
    return PeriodComparisonResponse(
        period1=format_period(comparison.period1),
        period2=format_period(comparison.period2),
        risk_count_period1=comparison.risk_count_period1,
        risk_count_period2=comparison.risk_count_period2,
        risk_count_change=comparison.risk_count_change,
        new_risks=comparison.new_risks,
        closed_risks=comparison.closed_risks,
        risk_changes=[RiskChangeResponse.model_validate(c) for c in comparison.risk_changes],
        score_changes=comparison.score_changes,
    )


@router.get("/trends", response_model=list[PeriodTrendResponse])
async def period_trends(principal: PrincipalDep, snapshotter: SnapshotterDep):
    trends = await snapshotter.period_trends(principal.organization_id)
    return [
        PeriodTrendResponse(
            period=format_period(t.period),
            snapshot_date=t.snapshot_date,
            total_risks=t.total_risks,
            by_status=t.by_status,
            by_level=t.by_level,
            avg_inherent_score=t.avg_inherent_score,
            avg_residual_score=t.avg_residual_score,
        )
        for t in trends
    ]
