"""
Primary-Invariant Enforcer.

Every risk with at least one linked root cause has exactly one primary root
cause, and likewise for impacts. The enforcer owns all writes to the two
junction tables and keeps the invariant true after every mutation:

    zero primaries  -> the incoming (or most recently marked) row becomes primary
    set new primary -> all sibling rows are demoted in the same transaction

Snapshots call ``repair`` first, which fixes data written by older code or
by hand and records each fix as an audit event instead of failing.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.principal import Principal
from ..models import (
    AuditAction,
    Impact,
    Risk,
    RiskImpact,
    RiskRootCause,
    RootCause,
    as_utc,
    utcnow,
)
from .audit import AuditEvent, AuditRecorder
from .errors import InvariantViolation, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class _Relation:
    name: str
    model: type
    target_model: type
    target_column: str
    weight_column: str


ROOT_CAUSES = _Relation(
    name="root_cause",
    model=RiskRootCause,
    target_model=RootCause,
    target_column="root_cause_id",
    weight_column="contribution_percentage",
)

IMPACTS = _Relation(
    name="impact",
    model=RiskImpact,
    target_model=Impact,
    target_column="impact_id",
    weight_column="severity_percentage",
)


@dataclass
class InvariantRepair:
    """One deterministic fix applied to a risk's junction rows."""
    risk_id: UUID
    relation: str
    primary_count_before: int
    demoted_ids: list[UUID]
    promoted_id: UUID

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_id": str(self.risk_id),
            "relation": self.relation,
            "primary_count_before": self.primary_count_before,
            "demoted_ids": [str(i) for i in self.demoted_ids],
            "promoted_id": str(self.promoted_id),
        }


def _recency_key(row: Any, relation: _Relation) -> tuple:
    """Most recently marked first, then heaviest weight, then oldest link."""
    marked = as_utc(row.primary_marked_at) or _EPOCH
    weight = getattr(row, relation.weight_column) or 0
    created = as_utc(row.created_at) or _EPOCH
    return (marked, weight, -created.timestamp(), str(row.id))


class PrimaryInvariantEnforcer:
    """Owns inserts, updates and deletes on RiskRootCause / RiskImpact."""

    def __init__(self, session: AsyncSession, audit: AuditRecorder | None = None):
        self._session = session
        self._audit = audit or AuditRecorder(session)

    # =========================================================================
    # LINK / UNLINK
    # =========================================================================

    async def link_root_cause(
        self,
        principal: Principal,
        risk_id: UUID,
        root_cause_id: UUID,
        is_primary: bool = False,
        contribution_percentage: int | None = None,
        rationale: str | None = None,
    ) -> RiskRootCause:
        """Link a root cause to a risk (or update the existing link)."""
        return await self._link(
            ROOT_CAUSES, principal, risk_id, root_cause_id, is_primary, contribution_percentage, rationale
        )

    async def link_impact(
        self,
        principal: Principal,
        risk_id: UUID,
        impact_id: UUID,
        is_primary: bool = False,
        severity_percentage: int | None = None,
        rationale: str | None = None,
    ) -> RiskImpact:
        """Link an impact to a risk (or update the existing link)."""
        return await self._link(
            IMPACTS, principal, risk_id, impact_id, is_primary, severity_percentage, rationale
        )

    async def set_primary_root_cause(
        self, principal: Principal, risk_id: UUID, root_cause_id: UUID
    ) -> RiskRootCause:
        return await self._set_primary(ROOT_CAUSES, principal, risk_id, root_cause_id)

    async def set_primary_impact(
        self, principal: Principal, risk_id: UUID, impact_id: UUID
    ) -> RiskImpact:
        return await self._set_primary(IMPACTS, principal, risk_id, impact_id)

    async def unlink_root_cause(self, principal: Principal, risk_id: UUID, root_cause_id: UUID) -> None:
        await self._unlink(ROOT_CAUSES, principal, risk_id, root_cause_id)

    async def unlink_impact(self, principal: Principal, risk_id: UUID, impact_id: UUID) -> None:
        await self._unlink(IMPACTS, principal, risk_id, impact_id)

    # =========================================================================
    # CHECK / REPAIR
    # =========================================================================

    async def check(self, risk_id: UUID, strict: bool = False) -> dict[str, int]:
        """
        Count primaries per relation for a risk.

        With ``strict=True`` an inconsistent count raises InvariantViolation.
        """
        counts: dict[str, int] = {}
        for relation in (ROOT_CAUSES, IMPACTS):
            rows = await self._rows(relation, risk_id, lock=False)
            primaries = sum(1 for r in rows if r.is_primary)
            counts[relation.name] = primaries
            if strict and rows and primaries != 1:
                raise InvariantViolation(
                    f"Risk {risk_id} has {primaries} primary {relation.name} rows",
                    risk_id=risk_id,
                    relation=relation.name,
                    primary_count=primaries,
                )
        return counts

    async def repair(
        self,
        organization_id: UUID,
        risk_id: UUID,
        actor_id: UUID | None = None,
    ) -> list[InvariantRepair]:
        """
        Restore exactly-one-primary for both relations of a risk.

        The most recently marked primary wins. Each repair is logged and
        audited; nothing is raised to the caller.
        """
        repairs: list[InvariantRepair] = []
        for relation in (ROOT_CAUSES, IMPACTS):
            try:
                await self.check_relation(relation, risk_id)
            except InvariantViolation as violation:
                repair = await self._repair_relation(relation, risk_id, violation.primary_count)
                repairs.append(repair)
                logger.warning(
                    f"Repaired {relation.name} primaries for risk {risk_id}: "
                    f"{violation.primary_count} -> 1 (promoted {repair.promoted_id})"
                )
                await self._audit.emit(
                    AuditEvent(
                        organization_id=organization_id,
                        actor_id=actor_id,
                        action=AuditAction.INVARIANT_REPAIR,
                        entity_type="risk",
                        entity_id=risk_id,
                        before={"primary_count": violation.primary_count},
                        after={"primary_id": repair.promoted_id},
                        details=repair.to_dict(),
                    )
                )
        return repairs

    async def check_relation(self, relation: _Relation, risk_id: UUID) -> None:
        rows = await self._rows(relation, risk_id, lock=False)
        primaries = sum(1 for r in rows if r.is_primary)
        if rows and primaries != 1:
            raise InvariantViolation(
                f"Risk {risk_id} has {primaries} primary {relation.name} rows",
                risk_id=risk_id,
                relation=relation.name,
                primary_count=primaries,
            )

    async def _repair_relation(
        self, relation: _Relation, risk_id: UUID, primary_count: int
    ) -> InvariantRepair:
        rows = await self._rows(relation, risk_id, lock=True)
        candidates = [r for r in rows if r.is_primary] or list(rows)
        winner = max(candidates, key=lambda r: _recency_key(r, relation))

        demoted: list[UUID] = []
        for row in rows:
            if row.id != winner.id and row.is_primary:
                row.is_primary = False
                demoted.append(row.id)
        if not winner.is_primary:
            winner.is_primary = True
            winner.primary_marked_at = utcnow()

        await self._session.flush()
        return InvariantRepair(
            risk_id=risk_id,
            relation=relation.name,
            primary_count_before=primary_count,
            demoted_ids=demoted,
            promoted_id=winner.id,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _get_risk(self, principal: Principal, risk_id: UUID) -> Risk:
        result = await self._session.execute(
            select(Risk).where(
                Risk.id == risk_id,
                Risk.organization_id == principal.organization_id,
            )
        )
        risk = result.scalar_one_or_none()
        if not risk:
            raise NotFoundError("risk", risk_id)
        return risk

    async def _rows(self, relation: _Relation, risk_id: UUID, lock: bool) -> Sequence[Any]:
        query = select(relation.model).where(relation.model.risk_id == risk_id)
        if lock:
            query = query.with_for_update()
        result = await self._session.execute(query)
        return result.scalars().all()

    async def _link(
        self,
        relation: _Relation,
        principal: Principal,
        risk_id: UUID,
        target_id: UUID,
        is_primary: bool,
        weight: int | None,
        rationale: str | None,
    ) -> Any:
        if weight is not None and not 1 <= weight <= 100:
            raise ValidationError(f"{relation.weight_column} must be between 1 and 100")

        await self._get_risk(principal, risk_id)
        target = await self._session.get(relation.target_model, target_id)
        if not target or target.organization_id != principal.organization_id:
            raise NotFoundError(relation.name, target_id)

        # Lock every sibling so concurrent primary changes serialize per risk
        rows = await self._rows(relation, risk_id, lock=True)
        existing = next(
            (r for r in rows if getattr(r, relation.target_column) == target_id), None
        )
        siblings = [r for r in rows if existing is None or r.id != existing.id]

        if existing is None:
            row = relation.model(risk_id=risk_id, is_primary=False)
            setattr(row, relation.target_column, target_id)
            self._session.add(row)
            action = AuditAction.LINK
        else:
            row = existing
            action = AuditAction.UPDATE

        setattr(row, relation.weight_column, weight)
        row.rationale = rationale

        self._apply_primary(row, siblings, want_primary=is_primary)
        await self._session.flush()

        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=action,
                entity_type=f"risk_{relation.name}",
                entity_id=row.id,
                after={
                    "risk_id": risk_id,
                    relation.target_column: target_id,
                    "is_primary": row.is_primary,
                    relation.weight_column: weight,
                },
            )
        )
        return row

    async def _set_primary(
        self, relation: _Relation, principal: Principal, risk_id: UUID, target_id: UUID
    ) -> Any:
        await self._get_risk(principal, risk_id)
        rows = await self._rows(relation, risk_id, lock=True)
        row = next((r for r in rows if getattr(r, relation.target_column) == target_id), None)
        if row is None:
            raise NotFoundError(f"risk_{relation.name}", target_id)

        previous = [r.id for r in rows if r.is_primary]
        self._apply_primary(row, [r for r in rows if r.id != row.id], want_primary=True)
        await self._session.flush()

        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=AuditAction.SET_PRIMARY,
                entity_type=f"risk_{relation.name}",
                entity_id=row.id,
                before={"primary_ids": previous},
                after={"primary_ids": [row.id]},
                details={"risk_id": risk_id},
            )
        )
        return row

    async def _unlink(
        self, relation: _Relation, principal: Principal, risk_id: UUID, target_id: UUID
    ) -> None:
        await self._get_risk(principal, risk_id)
        rows = await self._rows(relation, risk_id, lock=True)
        row = next((r for r in rows if getattr(r, relation.target_column) == target_id), None)
        if row is None:
            raise NotFoundError(f"risk_{relation.name}", target_id)

        remaining = [r for r in rows if r.id != row.id]
        promoted: UUID | None = None
        if row.is_primary and remaining and not any(r.is_primary for r in remaining):
            heir = max(remaining, key=lambda r: _recency_key(r, relation))
            heir.is_primary = True
            heir.primary_marked_at = utcnow()
            promoted = heir.id

        await self._session.delete(row)
        await self._session.flush()

        await self._audit.emit(
            AuditEvent(
                organization_id=principal.organization_id,
                actor_id=principal.user_id,
                action=AuditAction.UNLINK,
                entity_type=f"risk_{relation.name}",
                entity_id=row.id,
                before={"risk_id": risk_id, relation.target_column: target_id, "is_primary": row.is_primary},
                details={"promoted_id": promoted},
            )
        )

    @staticmethod
    def _apply_primary(row: Any, siblings: Sequence[Any], want_primary: bool) -> None:
        """The two transitions of the primary state machine."""
        if want_primary:
            for sibling in siblings:
                if sibling.is_primary:
                    sibling.is_primary = False
            if not row.is_primary:
                row.is_primary = True
                row.primary_marked_at = utcnow()
            return

        if not any(s.is_primary for s in siblings):
            # First link, or every other row lost its flag
            if not row.is_primary:
                row.is_primary = True
                row.primary_marked_at = utcnow()
        # Otherwise keep the row as it is
