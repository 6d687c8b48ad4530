"""Dispute data model."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

from keyhive.models.assignment import AssignmentState
from keyhive.models.types import enum_column
from keyhive.utils.datetime import utcnow


class DisputeStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeOutcome(str, Enum):
    RETURN_TO_PRIOR_STATE = "return_to_prior_state"
    FORCE_CLOSE = "force_close"


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class Dispute(SQLModel, table=True):
    """Dispute - exception branch of an assignment.

    ``prior_state`` remembers where the assignment was when the dispute was
    opened, so ``return_to_prior_state`` can restore it without touching the
    timeline.
    """

    __tablename__ = "disputes"
    __table_args__ = (
        Index(
            "uq_disputes_active_assignment",
            "key_assignment_id",
            unique=True,
            sqlite_where=text("status IN ('open', 'investigating')"),
            postgresql_where=text("status IN ('open', 'investigating')"),
        ),
    )

    id: str = Field(primary_key=True)
    key_assignment_id: str = Field(foreign_key="key_assignments.id", index=True)
    initiator_id: str = Field(index=True)

    reason: str
    evidence: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    status: DisputeStatus = Field(
        default=DisputeStatus.OPEN, sa_column=enum_column(DisputeStatus, index=True)
    )
    prior_state: AssignmentState = Field(sa_column=enum_column(AssignmentState))

    outcome: Optional[DisputeOutcome] = Field(
        default=None, sa_column=enum_column(DisputeOutcome, nullable=True)
    )
    resolution: Optional[str] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES
