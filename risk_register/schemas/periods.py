"""Pydantic schemas for period commits and risk history."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from .base import RegisterBaseModel


class PeriodCommitCreate(RegisterBaseModel):
    year: int = Field(..., ge=2000, le=2100)
    quarter: int = Field(..., ge=1, le=4)
    notes: str | None = None


class PeriodCommitResponse(RegisterBaseModel):
    id: UUID
    period_year: int
    period_quarter: int
    committed_at: datetime
    committed_by: UUID | None = None
    risks_count: int
    active_risks_count: int
    closed_risks_count: int
    controls_count: int
    kris_count: int
    repairs_count: int
    notes: str | None = None


class InvariantRepairResponse(RegisterBaseModel):
    risk_id: UUID
    relation: str
    primary_count_before: int
    demoted_ids: list[UUID]
    promoted_id: UUID


class PeriodCommitResultResponse(RegisterBaseModel):
    period: str
    next_period: str
    commit: PeriodCommitResponse
    risks_snapshotted: int
    repairs: list[InvariantRepairResponse] = []


class ActivePeriodResponse(RegisterBaseModel):
    current_period: str
    current_period_year: int
    current_period_quarter: int
    previous_period: str | None = None
    period_started_at: datetime


class RiskHistoryResponse(RegisterBaseModel):
    id: UUID
    risk_id: UUID
    period_year: int
    period_quarter: int
    change_type: str
    committed_at: datetime
    committed_by: UUID | None = None
    risk_code: str
    risk_title: str
    category: str | None = None
    owner: str | None = None
    status: str
    likelihood_inherent: int
    impact_inherent: int
    score_inherent: int
    likelihood_residual: int | None = None
    impact_residual: int | None = None
    score_residual: int | None = None
    snapshot_data: dict[str, Any] = {}


class RiskChangeResponse(RegisterBaseModel):
    risk_code: str
    risk_title: str
    likelihood_change: int
    impact_change: int
    score_change: int
    old_status: str
    new_status: str


class PeriodComparisonResponse(RegisterBaseModel):
    period1: str
    period2: str
    risk_count_period1: int
    risk_count_period2: int
    risk_count_change: int
    new_risks: list[str]
    closed_risks: list[str]
    risk_changes: list[RiskChangeResponse]
    score_changes: dict[str, float]


class PeriodTrendResponse(RegisterBaseModel):
    period: str
    snapshot_date: datetime
    total_risks: int
    by_status: dict[str, int]
    by_level: dict[str, int]
    avg_inherent_score: float
    avg_residual_score: float
