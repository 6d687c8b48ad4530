"""Actor identity.

Authentication happens upstream; the core trusts the (id, role) pair it is
handed and only decides what that actor may do.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    HOST = "host"
    PARTNER = "partner"
    GUEST = "guest"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class Actor:
    id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def is_any(self, *actor_ids: str | None) -> bool:
        """True if this actor is one of ``actor_ids`` or an admin."""
        return self.is_admin or self.id in {a for a in actor_ids if a}


# Used when anonymous access is enabled and no actor headers are sent
SYSTEM_ACTOR = Actor(id="system", role=ActorRole.ADMIN)
