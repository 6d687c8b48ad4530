"""Disputes API endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, Field

from keyhive.api.dependencies import ActorDep, DisputeServiceDep
from keyhive.api.v1.schemas import DisputeResponse, dispute_to_response
from keyhive.models.dispute import DisputeOutcome

router = APIRouter()


class ResolveDisputeRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)
    outcome: DisputeOutcome


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: str,
    disputes: DisputeServiceDep,
    actor: ActorDep,
) -> DisputeResponse:
    return dispute_to_response(await disputes.get(dispute_id, actor))


@router.post("/{dispute_id}/investigate", response_model=DisputeResponse)
async def investigate_dispute(
    dispute_id: str,
    disputes: DisputeServiceDep,
    actor: ActorDep,
) -> DisputeResponse:
    return dispute_to_response(await disputes.investigate(dispute_id, actor))


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: str,
    request: ResolveDisputeRequest,
    disputes: DisputeServiceDep,
    actor: ActorDep,
) -> DisputeResponse:
    dispute = await disputes.resolve(
        dispute_id, actor, resolution=request.resolution, outcome=request.outcome
    )
    return dispute_to_response(dispute)
