"""Assignments API endpoints.

One route per lifecycle operation. Routes only parse, resolve the actor and
delegate; every rule lives in ``AssignmentManager``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from keyhive.api.dependencies import (
    ActorDep,
    AssignmentManagerDep,
    DisputeServiceDep,
    MagicLinkServiceDep,
)
from keyhive.api.v1.schemas import (
    AssignmentResponse,
    DisputeResponse,
    assignment_to_response,
    dispute_to_response,
)
from keyhive.utils.datetime import to_naive_utc

router = APIRouter()


# Request/Response Models


class ScheduleDropRequest(BaseModel):
    hive_id: str
    scheduled_at: datetime


class ConfirmDropRequest(BaseModel):
    cell_id: str
    nfc_fob_id: str | None = None
    drop_off_code: str | None = Field(default=None, min_length=1, max_length=64)


class ValidatePickupRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class ConfirmReturnRequest(BaseModel):
    cell_id: str


class AssignGuestRequest(BaseModel):
    guest_id: str = Field(min_length=1)


class OpenDisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
    evidence: dict[str, Any] = Field(default_factory=dict)


class PickupCodeResponse(BaseModel):
    assignment_id: str
    pickup_code: str


class DropOffCodeResponse(BaseModel):
    assignment_id: str
    drop_off_code: str


class MagicLinkResponse(BaseModel):
    url: str
    token: str
    expires_at: datetime


# Endpoints


@router.get("/{assignment_id}", response_model=AssignmentResponse)
async def get_assignment(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    return assignment_to_response(await assignment_mgr.get(assignment_id, actor))


@router.post("/{assignment_id}/schedule-drop", response_model=AssignmentResponse)
async def schedule_drop(
    assignment_id: str,
    request: ScheduleDropRequest,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    assignment = await assignment_mgr.schedule_drop(
        assignment_id,
        actor,
        hive_id=request.hive_id,
        scheduled_at=to_naive_utc(request.scheduled_at),
    )
    return assignment_to_response(assignment)


@router.get("/{assignment_id}/drop-off-code", response_model=DropOffCodeResponse)
async def get_drop_off_code(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> DropOffCodeResponse:
    code = await assignment_mgr.request_drop_off_code(assignment_id, actor)
    return DropOffCodeResponse(assignment_id=assignment_id, drop_off_code=code)


@router.post("/{assignment_id}/confirm-drop", response_model=AssignmentResponse)
async def confirm_drop(
    assignment_id: str,
    request: ConfirmDropRequest,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    assignment = await assignment_mgr.confirm_drop(
        assignment_id,
        actor,
        cell_id=request.cell_id,
        nfc_fob_id=request.nfc_fob_id,
        drop_off_code=request.drop_off_code,
    )
    return assignment_to_response(assignment)


@router.post("/{assignment_id}/mark-available", response_model=AssignmentResponse)
async def mark_available(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    return assignment_to_response(await assignment_mgr.mark_available(assignment_id, actor))


@router.get("/{assignment_id}/pickup-code", response_model=PickupCodeResponse)
async def get_pickup_code(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> PickupCodeResponse:
    """Existing pickup code; never re-issued."""
    code = await assignment_mgr.request_pickup_code(assignment_id, actor)
    return PickupCodeResponse(assignment_id=assignment_id, pickup_code=code)


@router.post("/{assignment_id}/validate-pickup", response_model=AssignmentResponse)
async def validate_pickup(
    assignment_id: str,
    request: ValidatePickupRequest,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    assignment = await assignment_mgr.validate_pickup(assignment_id, actor, request.code)
    return assignment_to_response(assignment)


@router.post("/{assignment_id}/mark-in-use", response_model=AssignmentResponse)
async def mark_in_use(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    return assignment_to_response(await assignment_mgr.mark_in_use(assignment_id, actor))


@router.post("/{assignment_id}/initiate-return", response_model=AssignmentResponse)
async def initiate_return(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    return assignment_to_response(await assignment_mgr.initiate_return(assignment_id, actor))


@router.post("/{assignment_id}/confirm-return", response_model=AssignmentResponse)
async def confirm_return(
    assignment_id: str,
    request: ConfirmReturnRequest,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    assignment = await assignment_mgr.confirm_return(assignment_id, actor, cell_id=request.cell_id)
    return assignment_to_response(assignment)


@router.post("/{assignment_id}/close", response_model=AssignmentResponse)
async def close_assignment(
    assignment_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    return assignment_to_response(await assignment_mgr.close(assignment_id, actor))


@router.put("/{assignment_id}/guest", response_model=AssignmentResponse)
async def assign_guest(
    assignment_id: str,
    request: AssignGuestRequest,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    assignment = await assignment_mgr.assign_guest(assignment_id, actor, guest_id=request.guest_id)
    return assignment_to_response(assignment)


@router.post("/{assignment_id}/magic-link", response_model=MagicLinkResponse, status_code=201)
async def issue_magic_link(
    assignment_id: str,
    magic_links: MagicLinkServiceDep,
    actor: ActorDep,
) -> MagicLinkResponse:
    link = await magic_links.issue(assignment_id, actor)
    return MagicLinkResponse(url=link.url, token=link.token, expires_at=link.expires_at)


@router.post("/{assignment_id}/disputes", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    assignment_id: str,
    request: OpenDisputeRequest,
    disputes: DisputeServiceDep,
    actor: ActorDep,
) -> DisputeResponse:
    dispute = await disputes.open(
        assignment_id, actor, reason=request.reason, evidence=request.evidence
    )
    return dispute_to_response(dispute)


@router.get("/{assignment_id}/disputes", response_model=list[DisputeResponse])
async def list_disputes(
    assignment_id: str,
    disputes: DisputeServiceDep,
    actor: ActorDep,
) -> list[DisputeResponse]:
    return [dispute_to_response(d) for d in await disputes.list_for_assignment(assignment_id, actor)]
