"""Response models shared by the v1 routers.

Codes are never part of these models; the pickup code has its own endpoint.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from keyhive.models.assignment import KeyAssignment
from keyhive.models.dispute import Dispute


class AssignmentResponse(BaseModel):
    id: str
    key_id: str
    state: str
    version: int
    host_id: str
    hive_id: str | None
    partner_id: str | None
    guest_id: str | None
    cell_id: str | None
    nfc_fob_id: str | None
    scheduled_drop_at: datetime | None
    dropped_at: datetime | None
    available_at: datetime | None
    picked_up_at: datetime | None
    expected_return_at: datetime | None
    returned_at: datetime | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DisputeResponse(BaseModel):
    id: str
    key_assignment_id: str
    initiator_id: str
    reason: str
    evidence: dict[str, Any]
    status: str
    prior_state: str
    outcome: str | None
    resolution: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


def _value(enum_or_none) -> str | None:
    return enum_or_none.value if enum_or_none is not None else None


def assignment_to_response(assignment: KeyAssignment) -> AssignmentResponse:
    """Convert KeyAssignment model to API response."""
    return AssignmentResponse(
        id=assignment.id,
        key_id=assignment.key_id,
        state=_value(assignment.state),
        version=assignment.version,
        host_id=assignment.host_id,
        hive_id=assignment.hive_id,
        partner_id=assignment.partner_id,
        guest_id=assignment.guest_id,
        cell_id=assignment.cell_id,
        nfc_fob_id=assignment.nfc_fob_id,
        scheduled_drop_at=assignment.scheduled_drop_at,
        dropped_at=assignment.dropped_at,
        available_at=assignment.available_at,
        picked_up_at=assignment.picked_up_at,
        expected_return_at=assignment.expected_return_at,
        returned_at=assignment.returned_at,
        closed_at=assignment.closed_at,
        created_at=assignment.created_at,
        updated_at=assignment.updated_at,
    )


def dispute_to_response(dispute: Dispute) -> DisputeResponse:
    """Convert Dispute model to API response."""
    return DisputeResponse(
        id=dispute.id,
        key_assignment_id=dispute.key_assignment_id,
        initiator_id=dispute.initiator_id,
        reason=dispute.reason,
        evidence=dispute.evidence or {},
        status=_value(dispute.status),
        prior_state=_value(dispute.prior_state),
        outcome=_value(dispute.outcome),
        resolution=dispute.resolution,
        resolved_by=dispute.resolved_by,
        resolved_at=dispute.resolved_at,
        created_at=dispute.created_at,
    )
