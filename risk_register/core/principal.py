"""The authenticated caller, as resolved by the identity collaborator."""

from dataclasses import dataclass, field
from uuid import UUID


@dataclass(frozen=True)
class Principal:
    """Represents the authenticated user context.

    Every exposed engine operation takes a principal explicitly; nothing in
    the engines reads an ambient identity.
    """

    user_id: UUID
    organization_id: UUID
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def id(self) -> UUID:
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return bool(self.roles & {"owner", "admin"})

    def has_any_role(self, roles: frozenset[str] | set[str]) -> bool:
        return bool(self.roles & set(roles))
