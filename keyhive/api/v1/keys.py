"""Keys API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from keyhive.api.dependencies import ActorDep, AssignmentManagerDep, KeyManagerDep
from keyhive.api.v1.schemas import AssignmentResponse, assignment_to_response
from keyhive.identity import ActorRole
from keyhive.models.key import Key, KeyStatus, KeyType, PackageType

router = APIRouter()


# Request/Response Models


class CreateKeyRequest(BaseModel):
    label: str = Field(min_length=1, max_length=255)
    key_type: KeyType = KeyType.MASTER
    package_type: PackageType = PackageType.WEEKLY
    host_id: str | None = Field(default=None, description="Required when an admin registers")
    property_id: str | None = None
    description: str | None = None
    notes: str | None = None


class UpdateKeyRequest(BaseModel):
    label: str | None = Field(default=None, min_length=1, max_length=255)
    key_type: KeyType | None = None
    package_type: PackageType | None = None
    property_id: str | None = None
    description: str | None = None
    notes: str | None = None


class KeyResponse(BaseModel):
    id: str
    host_id: str
    property_id: str | None
    label: str
    description: str | None
    notes: str | None
    key_type: KeyType
    package_type: PackageType
    status: KeyStatus
    created_at: datetime
    updated_at: datetime


class KeyListResponse(BaseModel):
    items: list[KeyResponse]


def _key_to_response(key: Key, status: KeyStatus) -> KeyResponse:
    return KeyResponse(
        id=key.id,
        host_id=key.host_id,
        property_id=key.property_id,
        label=key.label,
        description=key.description,
        notes=key.notes,
        key_type=key.key_type,
        package_type=key.package_type,
        status=status,
        created_at=key.created_at,
        updated_at=key.updated_at,
    )


# Endpoints


@router.post("", response_model=KeyResponse, status_code=201)
async def create_key(
    request: CreateKeyRequest,
    key_mgr: KeyManagerDep,
    actor: ActorDep,
) -> KeyResponse:
    key = await key_mgr.create(actor, **request.model_dump())
    return _key_to_response(key, await key_mgr.status(key))


@router.get("", response_model=KeyListResponse)
async def list_keys(
    key_mgr: KeyManagerDep,
    actor: ActorDep,
    host_id: str | None = Query(None),
) -> KeyListResponse:
    """List keys with their derived status. Hosts only see their own."""
    if actor.role == ActorRole.HOST:
        host_id = actor.id
    items = await key_mgr.list(host_id=host_id)
    return KeyListResponse(items=[_key_to_response(i.key, i.status) for i in items])


@router.get("/{key_id}", response_model=KeyResponse)
async def get_key(key_id: str, key_mgr: KeyManagerDep, actor: ActorDep) -> KeyResponse:
    key = await key_mgr.get(key_id, actor)
    return _key_to_response(key, await key_mgr.status(key))


@router.patch("/{key_id}", response_model=KeyResponse)
async def update_key(
    key_id: str,
    request: UpdateKeyRequest,
    key_mgr: KeyManagerDep,
    actor: ActorDep,
) -> KeyResponse:
    key = await key_mgr.update(key_id, actor, **request.model_dump(exclude_unset=True))
    return _key_to_response(key, await key_mgr.status(key))


@router.delete("/{key_id}", status_code=204)
async def delete_key(key_id: str, key_mgr: KeyManagerDep, actor: ActorDep) -> None:
    """Soft-delete a key. 409 while it has an active assignment."""
    await key_mgr.delete(key_id, actor)


@router.post("/{key_id}/assignments", response_model=AssignmentResponse, status_code=201)
async def create_assignment(
    key_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> AssignmentResponse:
    """Start a new assignment cycle (state ``pending_drop``)."""
    assignment = await assignment_mgr.create(key_id, actor)
    return assignment_to_response(assignment)


@router.get("/{key_id}/assignments", response_model=list[AssignmentResponse])
async def list_key_assignments(
    key_id: str,
    assignment_mgr: AssignmentManagerDep,
    actor: ActorDep,
) -> list[AssignmentResponse]:
    """Assignment history, newest first."""
    assignments = await assignment_mgr.list_for_key(key_id, actor)
    return [assignment_to_response(a) for a in assignments]
