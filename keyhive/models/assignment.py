"""KeyAssignment data model.

One KeyAssignment is one cycle of a key through a hive: drop-off, pickup and
return. Rows are append-only history; the lifecycle mutates ``state`` and the
timeline fields, never deletes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from keyhive.models.types import enum_column
from keyhive.utils.datetime import latest, utcnow


class AssignmentState(str, Enum):
    PENDING_DROP = "pending_drop"
    DROPPED = "dropped"
    AVAILABLE = "available"
    PICKED_UP = "picked_up"
    IN_USE = "in_use"
    RETURNED_PENDING = "returned_pending"
    RETURNED_CONFIRMED = "returned_confirmed"
    CLOSED = "closed"
    DISPUTE = "dispute"


# Forward edges of the lifecycle. Entering DISPUTE (from any non-closed state)
# and leaving it (prior state or CLOSED) are handled by the dispute operations.
ALLOWED_TRANSITIONS: dict[AssignmentState, frozenset[AssignmentState]] = {
    AssignmentState.PENDING_DROP: frozenset({AssignmentState.DROPPED}),
    AssignmentState.DROPPED: frozenset({AssignmentState.AVAILABLE}),
    AssignmentState.AVAILABLE: frozenset({AssignmentState.PICKED_UP}),
    AssignmentState.PICKED_UP: frozenset(
        {AssignmentState.IN_USE, AssignmentState.RETURNED_PENDING}
    ),
    AssignmentState.IN_USE: frozenset({AssignmentState.RETURNED_PENDING}),
    AssignmentState.RETURNED_PENDING: frozenset({AssignmentState.RETURNED_CONFIRMED}),
    AssignmentState.RETURNED_CONFIRMED: frozenset({AssignmentState.CLOSED}),
    AssignmentState.CLOSED: frozenset(),
    AssignmentState.DISPUTE: frozenset(),
}

# States in which the assignment still occupies the key
OPEN_STATES = frozenset(s for s in AssignmentState if s != AssignmentState.CLOSED)


def can_transition(current: AssignmentState, target: AssignmentState) -> bool:
    """Check whether ``current -> target`` is a lifecycle edge."""
    current = AssignmentState(current)
    target = AssignmentState(target)
    if target == AssignmentState.DISPUTE:
        return current in OPEN_STATES and current != AssignmentState.DISPUTE
    return target in ALLOWED_TRANSITIONS[current]


class KeyAssignment(SQLModel, table=True):
    """KeyAssignment - lifecycle instance of a key moving through a hive."""

    __tablename__ = "key_assignments"
    __table_args__ = (
        # One non-closed assignment per key
        Index(
            "uq_key_assignments_open_key",
            "key_id",
            unique=True,
            sqlite_where=text("state != 'closed'"),
            postgresql_where=text("state != 'closed'"),
        ),
        # A cell / fob is held from ConfirmDrop until it is released
        Index(
            "uq_key_assignments_held_cell",
            "cell_id",
            unique=True,
            sqlite_where=text("resources_released_at IS NULL"),
            postgresql_where=text("resources_released_at IS NULL"),
        ),
        Index(
            "uq_key_assignments_held_fob",
            "nfc_fob_id",
            unique=True,
            sqlite_where=text("resources_released_at IS NULL"),
            postgresql_where=text("resources_released_at IS NULL"),
        ),
    )

    id: str = Field(primary_key=True)
    key_id: str = Field(foreign_key="keys.id", index=True)
    host_id: str = Field(index=True)

    # Bound by ScheduleDrop / ConfirmDrop
    hive_id: Optional[str] = Field(default=None, foreign_key="hives.id", index=True)
    partner_id: Optional[str] = Field(default=None, index=True)
    cell_id: Optional[str] = Field(default=None, foreign_key="cells.id")
    nfc_fob_id: Optional[str] = Field(default=None, foreign_key="nfc_fobs.id")

    # Bound by AssignGuest or at pickup
    guest_id: Optional[str] = Field(default=None, index=True)

    drop_off_code: Optional[str] = Field(default=None, unique=True)
    pickup_code: Optional[str] = Field(default=None, unique=True)

    state: AssignmentState = Field(
        default=AssignmentState.PENDING_DROP,
        sa_column=enum_column(AssignmentState, index=True),
    )

    # Timeline
    scheduled_drop_at: Optional[datetime] = Field(default=None)
    dropped_at: Optional[datetime] = Field(default=None)
    available_at: Optional[datetime] = Field(default=None)
    picked_up_at: Optional[datetime] = Field(default=None)
    expected_return_at: Optional[datetime] = Field(default=None)
    returned_at: Optional[datetime] = Field(default=None)
    closed_at: Optional[datetime] = Field(default=None)

    # Cell / fob handed back to the registry
    resources_released_at: Optional[datetime] = Field(default=None)

    # Optimistic locking
    version: int = Field(default=1)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.state == AssignmentState.CLOSED

    @property
    def holds_resources(self) -> bool:
        """True while a cell or fob is bound and not yet released."""
        return (
            self.cell_id is not None or self.nfc_fob_id is not None
        ) and self.resources_released_at is None

    def last_event_at(self) -> Optional[datetime]:
        """Latest timestamp already recorded on the timeline.

        ``scheduled_drop_at`` and ``expected_return_at`` are plans, not events,
        and do not count.
        """
        return latest(
            self.created_at,
            self.dropped_at,
            self.available_at,
            self.picked_up_at,
            self.returned_at,
            self.closed_at,
            self.resources_released_at,
        )

    def parties(self) -> set[str]:
        """Actor ids taking part in this assignment."""
        return {p for p in (self.host_id, self.partner_id, self.guest_id) if p}
