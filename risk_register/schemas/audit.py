"""Pydantic schemas for the audit log."""

from datetime import datetime
from typing import Any
from uuid import UUID

from ..models import AuditAction
from .base import PaginatedResponse, RegisterBaseModel


class AuditLogEntry(RegisterBaseModel):
    """A single audit log entry."""

    id: UUID
    organization_id: UUID
    actor_id: UUID | None = None  # None for system actions
    action: AuditAction
    entity_type: str
    entity_id: UUID
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    details: dict[str, Any] = {}
    created_at: datetime

    # Chain integrity
    sequence: int
    previous_hash: str | None = None
    entry_hash: str


class AuditLogResponse(PaginatedResponse):
    """Paginated audit log response."""

    items: list[AuditLogEntry]


class ChainVerificationResponse(RegisterBaseModel):
    organization_id: UUID
    entries_checked: int
    is_valid: bool
    first_broken_sequence: int | None = None
