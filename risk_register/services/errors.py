"""Error kinds raised by the risk engines."""

from uuid import UUID


class RiskEngineError(Exception):
    """Base exception for risk engine operations."""
    pass


class NotFoundError(RiskEngineError):
    """Referenced row does not exist in the caller's organization."""

    def __init__(self, entity_type: str, entity_id: UUID | str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ValidationError(RiskEngineError):
    """Caller supplied input the engine cannot accept."""
    pass


class PermissionDeniedError(RiskEngineError):
    """Principal lacks the role an operation requires."""
    pass


class ConfigurationError(RiskEngineError):
    """No threshold could be resolved for an indicator.

    Reported rather than fatal: the measurement is stored as undetermined.
    """

    def __init__(self, message: str, assignment_id: UUID | None = None):
        self.assignment_id = assignment_id
        super().__init__(message)


class ConcurrencyConflict(RiskEngineError):
    """Serialized write contention on an assignment or a period commit.

    Callers are expected to retry.
    """
    pass


class InvariantViolation(RiskEngineError):
    """Primary cause/impact inconsistency detected inside a transaction."""

    def __init__(self, message: str, risk_id: UUID, relation: str, primary_count: int):
        self.risk_id = risk_id
        self.relation = relation
        self.primary_count = primary_count
        super().__init__(message)


class WorkflowStateError(RiskEngineError):
    """Transition not allowed from the record's current state."""

    def __init__(self, message: str, current_state: str, entity_id: UUID | None = None):
        self.current_state = current_state
        self.entity_id = entity_id
        super().__init__(message)


class DuplicatePeriodCommit(RiskEngineError):
    """Period already committed (or being committed) for the organization."""

    def __init__(self, year: int, quarter: int, existing_commit_id: UUID | None = None):
        self.year = year
        self.quarter = quarter
        self.existing_commit_id = existing_commit_id
        super().__init__(f"Period Q{quarter} {year} already committed")
