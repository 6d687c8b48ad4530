"""Guest-facing endpoints: magic links and token validation."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from keyhive.api.dependencies import (
    ActorDep,
    AssignmentManagerDep,
    MagicLinkServiceDep,
    TokenValidatorDep,
)
from keyhive.models.access_token import TokenType
from keyhive.models.assignment import AssignmentState

router = APIRouter()


class PickupDetailsResponse(BaseModel):
    assignment_id: str
    state: str
    key_label: str | None
    hive_name: str | None
    hive_address: str | None
    cell_number: str | None
    pickup_code: str | None = Field(description="Only present once the key is available")
    expected_return_at: datetime | None


class ValidateTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    token_type: TokenType = TokenType.OTP
    consume: bool = True


class ValidateTokenResponse(BaseModel):
    assignment_id: str
    state: str | None = Field(default=None, description="Set when the token was redeemed")


@router.get("/guest/pickup/{token}", response_model=PickupDetailsResponse)
async def open_magic_link(token: str, magic_links: MagicLinkServiceDep) -> PickupDetailsResponse:
    """Open a magic link. Viewing never consumes the code."""
    details = await magic_links.open(token)
    return PickupDetailsResponse(
        assignment_id=details.assignment_id,
        state=details.state.value,
        key_label=details.key_label,
        hive_name=details.hive_name,
        hive_address=details.hive_address,
        cell_number=details.cell_number,
        pickup_code=details.pickup_code,
        expected_return_at=details.expected_return_at,
    )


@router.post("/tokens/validate", response_model=ValidateTokenResponse)
async def validate_token(
    request: ValidateTokenRequest,
    actor: ActorDep,
    validator: TokenValidatorDep,
    assignments: AssignmentManagerDep,
) -> ValidateTokenResponse:
    """Validate an access token.

    With ``consume`` the token is redeemed through its assignment transition
    (a pickup code picks the key up); otherwise it is only checked.
    """
    if request.consume:
        assignment = await assignments.redeem_token(request.token, request.token_type, actor)
        return ValidateTokenResponse(
            assignment_id=assignment.id,
            state=AssignmentState(assignment.state).value,
        )

    assignment_id = await validator.validate(request.token, request.token_type)
    return ValidateTokenResponse(assignment_id=assignment_id)
