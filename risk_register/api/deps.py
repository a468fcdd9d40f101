"""Engine dependencies and error mapping shared by the route modules."""

from typing import Annotated

from fastapi import Depends, status

from ..core import SessionDep
from ..services import (
    AuditRecorder,
    BreachEngine,
    CatalogService,
    ConcurrencyConflict,
    DuplicatePeriodCommit,
    EscalationEngine,
    InvariantViolation,
    NotFoundError,
    PeriodSnapshotter,
    PermissionDeniedError,
    PrimaryInvariantEnforcer,
    RiskEngineError,
    ValidationError,
    WorkflowStateError,
    breach_config_from_settings,
    escalation_config_from_settings,
)


# =============================================================================
# ENGINE DEPENDENCIES
# =============================================================================


def get_audit_recorder(session: SessionDep) -> AuditRecorder:
    return AuditRecorder(session)


AuditDep = Annotated[AuditRecorder, Depends(get_audit_recorder)]


def get_escalation_engine(session: SessionDep, audit: AuditDep) -> EscalationEngine:
    return EscalationEngine(session, config=escalation_config_from_settings(), audit=audit)


EscalationEngineDep = Annotated[EscalationEngine, Depends(get_escalation_engine)]


def get_breach_engine(
    session: SessionDep, audit: AuditDep, escalation: EscalationEngineDep
) -> BreachEngine:
    return BreachEngine(
        session, config=breach_config_from_settings(), escalation=escalation, audit=audit
    )


BreachEngineDep = Annotated[BreachEngine, Depends(get_breach_engine)]


def get_enforcer(session: SessionDep, audit: AuditDep) -> PrimaryInvariantEnforcer:
    return PrimaryInvariantEnforcer(session, audit=audit)


EnforcerDep = Annotated[PrimaryInvariantEnforcer, Depends(get_enforcer)]


def get_snapshotter(session: SessionDep, audit: AuditDep, enforcer: EnforcerDep) -> PeriodSnapshotter:
    return PeriodSnapshotter(session, enforcer=enforcer, audit=audit)


SnapshotterDep = Annotated[PeriodSnapshotter, Depends(get_snapshotter)]


def get_catalog(session: SessionDep, audit: AuditDep) -> CatalogService:
    return CatalogService(session, audit=audit)


CatalogDep = Annotated[CatalogService, Depends(get_catalog)]


# =============================================================================
# ERROR MAPPING
# =============================================================================

_STATUS_BY_ERROR: list[tuple[type[RiskEngineError], int, str]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (ValidationError, status.HTTP_400_BAD_REQUEST, "validation_error"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "permission_denied"),
    (WorkflowStateError, status.HTTP_409_CONFLICT, "invalid_state"),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT, "concurrency_conflict"),
    (DuplicatePeriodCommit, status.HTTP_409_CONFLICT, "duplicate_period_commit"),
    (InvariantViolation, status.HTTP_409_CONFLICT, "invariant_violation"),
]


def error_status(exc: RiskEngineError) -> tuple[int, str]:
    """HTTP status code and error slug for an engine error."""
    for error_type, code, slug in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code, slug
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "engine_error"
