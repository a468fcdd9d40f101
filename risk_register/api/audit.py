"""API routes for the hash-chained audit log."""

from uuid import UUID

from fastapi import APIRouter, Query

from ..core import AdminDep
from ..models import AuditAction
from ..schemas import AuditLogEntry, AuditLogResponse, ChainVerificationResponse
from .deps import AuditDep

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/log", response_model=AuditLogResponse)
async def get_audit_log(
    principal: AdminDep,  # Only admins can view audit logs
    audit: AuditDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    entity_type: str | None = None,
    entity_id: UUID | None = None,
    action: AuditAction | None = None,
):
    """Query the audit log with filters, newest first. Requires admin privileges."""
    entries, total = await audit.get_audit_log(
        organization_id=principal.organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return AuditLogResponse.create(
        items=[AuditLogEntry.model_validate(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/verify-chain", response_model=ChainVerificationResponse)
async def verify_audit_chain(principal: AdminDep, audit: AuditDep):
    """Verify the integrity of the organization's audit chain.

    Every entry hash is recomputed and compared with the stored link to its
    predecessor; the first mismatch is reported.
    """
    result = await audit.verify_chain(principal.organization_id)
    return ChainVerificationResponse.model_validate(result)
