"""Key data model.

A Key is the physical key artifact registered by a host. Its status is not
stored: it is derived from the key's current assignment (see
``Key.compute_status``).
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, SQLModel

from keyhive.models.types import enum_column
from keyhive.utils.datetime import utcnow

if TYPE_CHECKING:
    from keyhive.models.assignment import KeyAssignment


class KeyType(str, Enum):
    MASTER = "master"
    DUPLICATE = "duplicate"
    SPARE = "spare"


class PackageType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    PAY_PER_USE = "pay_per_use"


class KeyStatus(str, Enum):
    """Key status as seen by hosts (derived, never persisted)."""

    CREATED = "created"
    ASSIGNED = "assigned"
    DEPOSITED = "deposited"
    AVAILABLE = "available"
    PICKED_UP = "picked_up"
    RETURNED = "returned"
    CLOSED = "closed"
    DISPUTE = "dispute"


class Key(SQLModel, table=True):
    """Key - physical key owned by exactly one host."""

    __tablename__ = "keys"

    id: str = Field(primary_key=True)
    host_id: str = Field(index=True)
    property_id: Optional[str] = Field(default=None, index=True)

    label: str
    description: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)

    key_type: KeyType = Field(default=KeyType.MASTER, sa_column=enum_column(KeyType))
    package_type: PackageType = Field(
        default=PackageType.WEEKLY, sa_column=enum_column(PackageType)
    )

    # Soft delete (tombstone); refused while an assignment is active
    deleted_at: Optional[datetime] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def compute_status(
        self,
        current_assignment: "Optional[KeyAssignment]" = None,
    ) -> KeyStatus:
        """Derive key status from its current (latest) assignment."""
        from keyhive.models.assignment import AssignmentState

        if current_assignment is None:
            return KeyStatus.CREATED

        return {
            AssignmentState.PENDING_DROP: KeyStatus.ASSIGNED,
            AssignmentState.DROPPED: KeyStatus.DEPOSITED,
            AssignmentState.AVAILABLE: KeyStatus.AVAILABLE,
            AssignmentState.PICKED_UP: KeyStatus.PICKED_UP,
            AssignmentState.IN_USE: KeyStatus.PICKED_UP,
            AssignmentState.RETURNED_PENDING: KeyStatus.RETURNED,
            AssignmentState.RETURNED_CONFIRMED: KeyStatus.RETURNED,
            AssignmentState.CLOSED: KeyStatus.CLOSED,
            AssignmentState.DISPUTE: KeyStatus.DISPUTE,
        }[AssignmentState(current_assignment.state)]
