"""Audit service: structured change events and the hash-chained audit log."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID
import json
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.security import canonical_json, hash_content
from ..models import AuditAction, AuditLog, as_utc, utcnow
from .errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

CHAIN_APPEND_ATTEMPTS = 5


def jsonable(data: Any) -> Any:
    """Coerce UUIDs, datetimes and enums into plain JSON values."""
    if data is None:
        return None
    return json.loads(canonical_json(data))


def field_snapshot(obj: Any, fields: Sequence[str]) -> dict[str, Any]:
    """Capture the named attributes of a row as a JSON-ready dict."""
    return jsonable({name: getattr(obj, name) for name in fields})


@dataclass
class AuditEvent:
    """A state change emitted by an engine for the audit recorder."""
    organization_id: UUID
    actor_id: UUID | None  # None for system actions (cron, repairs)
    action: AuditAction
    entity_type: str
    entity_id: UUID
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ChainVerification:
    organization_id: UUID
    entries_checked: int
    is_valid: bool
    first_broken_sequence: int | None = None


class AuditRecorder:
    """
    Persists audit events inside the caller's transaction.

    Entries are chained per organization: each row stores the hash of the
    previous row, so a rolled back transaction leaves no audit trace and a
    tampered row breaks every hash after it.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def emit(self, event: AuditEvent) -> AuditLog:
        """
        Append an event to the organization's audit chain.

        The row is inserted under a savepoint. When a concurrent transaction
        in the same organization took the next sequence first, the unique
        (organization, sequence) constraint rejects the row and the append
        is retried against the new chain head.
        """
        before = jsonable(event.before)
        after = jsonable(event.after)
        details = jsonable(event.details) or {}

        # Keep the caller's pending rows out of the savepoint
        await self._session.flush()

        for attempt in range(1, CHAIN_APPEND_ATTEMPTS + 1):
            sequence, previous_hash = await self._chain_head(event.organization_id)
            entry = AuditLog(
                organization_id=event.organization_id,
                actor_id=event.actor_id,
                action=event.action,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                before=before,
                after=after,
                details=details,
                created_at=event.timestamp,
                sequence=sequence + 1,
                previous_hash=previous_hash,
            )
            entry.entry_hash = self._hash_entry(entry)
            try:
                async with self._session.begin_nested():
                    self._session.add(entry)
            except IntegrityError:
                logger.info(
                    f"Audit sequence {sequence + 1} for org {event.organization_id} taken "
                    f"concurrently (attempt {attempt}/{CHAIN_APPEND_ATTEMPTS})"
                )
                continue

            logger.debug(
                f"Audit {event.action.value} on {event.entity_type} {event.entity_id} "
                f"(org={event.organization_id}, seq={entry.sequence})"
            )
            return entry

        raise ConcurrencyConflict(
            f"Could not append to the audit chain of org {event.organization_id} "
            f"after {CHAIN_APPEND_ATTEMPTS} attempts"
        )

    async def _chain_head(self, organization_id: UUID) -> tuple[int, str | None]:
        """Last sequence and hash of the organization's chain, (0, None) when empty."""
        last = (
            await self._session.execute(
                select(AuditLog.sequence, AuditLog.entry_hash)
                .where(AuditLog.organization_id == organization_id)
                .order_by(AuditLog.sequence.desc())
                .limit(1)
            )
        ).first()
        if last is None:
            return 0, None
        return last.sequence, last.entry_hash

    @staticmethod
    def _hash_entry(entry: AuditLog) -> str:
        return hash_content(
            canonical_json(
                {
                    "organization_id": entry.organization_id,
                    "sequence": entry.sequence,
                    "actor_id": entry.actor_id,
                    "action": entry.action.value,
                    "entity_type": entry.entity_type,
                    "entity_id": entry.entity_id,
                    "before": entry.before,
                    "after": entry.after,
                    "details": entry.details,
                    "created_at": as_utc(entry.created_at).isoformat(),
                    "previous_hash": entry.previous_hash,
                }
            )
        )

    async def get_audit_log(
        self,
        organization_id: UUID,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        action: AuditAction | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[Sequence[AuditLog], int]:
        """Get audit log entries with filtering, newest first."""
        query = select(AuditLog).where(AuditLog.organization_id == organization_id)

        if entity_type:
            query = query.where(AuditLog.entity_type == entity_type)
        if entity_id:
            query = query.where(AuditLog.entity_id == entity_id)
        if action:
            query = query.where(AuditLog.action == action)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self._session.execute(count_query)).scalar_one()

        query = query.order_by(AuditLog.sequence.desc()).limit(limit).offset(offset)
        result = await self._session.execute(query)
        return result.scalars().all(), total

    async def verify_chain(self, organization_id: UUID) -> ChainVerification:
        """Recompute every hash in the organization's chain."""
        result = await self._session.execute(
            select(AuditLog)
            .where(AuditLog.organization_id == organization_id)
            .order_by(AuditLog.sequence.asc())
        )
        previous_hash: str | None = None
        checked = 0
        for entry in result.scalars():
            checked += 1
            if entry.previous_hash != previous_hash or self._hash_entry(entry) != entry.entry_hash:
                logger.error(
                    f"Audit chain broken for org {organization_id} at sequence {entry.sequence}"
                )
                return ChainVerification(
                    organization_id=organization_id,
                    entries_checked=checked,
                    is_valid=False,
                    first_broken_sequence=entry.sequence,
                )
            previous_hash = entry.entry_hash

        return ChainVerification(
            organization_id=organization_id,
            entries_checked=checked,
            is_valid=True,
        )
