"""Hive, cell and NFC fob inventory endpoints.

Paths carry their own prefixes (/hives, /cells, /fobs).
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from keyhive.api.dependencies import ActorDep, HiveRegistryDep
from keyhive.identity import ActorRole
from keyhive.models.hive import Cell, CellStatus, Hive, HiveStatus
from keyhive.models.nfc_fob import FobStatus, NfcFob
from keyhive.utils.datetime import to_naive_utc

router = APIRouter()


# Request/Response Models


class CreateHiveRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    total_cells: int = Field(ge=1, le=1000)
    partner_id: str | None = Field(default=None, description="Required when an admin registers")
    location_name: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class HiveStatusRequest(BaseModel):
    status: HiveStatus


class CellStatusRequest(BaseModel):
    status: CellStatus


class HeartbeatRequest(BaseModel):
    at: datetime | None = None


class RegisterFobRequest(BaseModel):
    fob_uid: str = Field(min_length=1, max_length=128)
    fob_serial: str | None = None
    fob_name: str | None = None
    hive_id: str | None = None


class HiveResponse(BaseModel):
    id: str
    partner_id: str
    name: str
    location_name: str | None
    address: str | None
    city: str | None
    country: str | None
    latitude: float | None
    longitude: float | None
    total_cells: int
    available_cells: int
    status: HiveStatus
    created_at: datetime


class CellResponse(BaseModel):
    id: str
    hive_id: str
    cell_number: str
    hardware_id: str | None
    status: CellStatus
    last_heartbeat: datetime | None


class FobResponse(BaseModel):
    id: str
    fob_uid: str
    fob_serial: str
    fob_name: str | None
    status: FobStatus
    assigned_hive_id: str | None
    assigned_slot: str | None


def _hive_to_response(hive: Hive, available_cells: int) -> HiveResponse:
    return HiveResponse(
        id=hive.id,
        partner_id=hive.partner_id,
        name=hive.name,
        location_name=hive.location_name,
        address=hive.address,
        city=hive.city,
        country=hive.country,
        latitude=hive.latitude,
        longitude=hive.longitude,
        total_cells=hive.total_cells,
        available_cells=available_cells,
        status=hive.status,
        created_at=hive.created_at,
    )


def _cell_to_response(cell: Cell) -> CellResponse:
    return CellResponse(
        id=cell.id,
        hive_id=cell.hive_id,
        cell_number=cell.cell_number,
        hardware_id=cell.hardware_id,
        status=cell.status,
        last_heartbeat=cell.last_heartbeat,
    )


def _fob_to_response(fob: NfcFob) -> FobResponse:
    return FobResponse(
        id=fob.id,
        fob_uid=fob.fob_uid,
        fob_serial=fob.fob_serial,
        fob_name=fob.fob_name,
        status=fob.status,
        assigned_hive_id=fob.assigned_hive_id,
        assigned_slot=fob.assigned_slot,
    )


# Hives


@router.post("/hives", response_model=HiveResponse, status_code=201)
async def create_hive(
    request: CreateHiveRequest,
    registry: HiveRegistryDep,
    actor: ActorDep,
) -> HiveResponse:
    hive = await registry.create_hive(actor, **request.model_dump())
    return _hive_to_response(hive, await registry.available_cell_count(hive.id))


@router.get("/hives", response_model=list[HiveResponse])
async def list_hives(
    registry: HiveRegistryDep,
    actor: ActorDep,
    partner_id: str | None = Query(None),
) -> list[HiveResponse]:
    if actor.role == ActorRole.PARTNER:
        partner_id = actor.id
    hives = await registry.list_hives(partner_id=partner_id)
    return [_hive_to_response(h, await registry.available_cell_count(h.id)) for h in hives]


@router.get("/hives/{hive_id}", response_model=HiveResponse)
async def get_hive(hive_id: str, registry: HiveRegistryDep, actor: ActorDep) -> HiveResponse:
    hive = await registry.get_hive(hive_id)
    return _hive_to_response(hive, await registry.available_cell_count(hive_id))


@router.put("/hives/{hive_id}/status", response_model=HiveResponse)
async def set_hive_status(
    hive_id: str,
    request: HiveStatusRequest,
    registry: HiveRegistryDep,
    actor: ActorDep,
) -> HiveResponse:
    hive = await registry.set_hive_status(hive_id, request.status, actor)
    return _hive_to_response(hive, await registry.available_cell_count(hive_id))


@router.get("/hives/{hive_id}/cells", response_model=list[CellResponse])
async def list_cells(
    hive_id: str,
    registry: HiveRegistryDep,
    actor: ActorDep,
    available: bool = Query(False, description="Only cells a drop could use now"),
) -> list[CellResponse]:
    await registry.get_hive(hive_id)
    if available:
        cells = await registry.list_available_cells(hive_id)
    else:
        cells = await registry.list_cells(hive_id)
    return [_cell_to_response(c) for c in cells]


# Cells


@router.put("/cells/{cell_id}/status", response_model=CellResponse)
async def set_cell_status(
    cell_id: str,
    request: CellStatusRequest,
    registry: HiveRegistryDep,
    actor: ActorDep,
) -> CellResponse:
    return _cell_to_response(await registry.set_cell_status(cell_id, request.status, actor))


@router.post("/cells/{cell_id}/heartbeat", response_model=CellResponse)
async def record_heartbeat(
    cell_id: str,
    request: HeartbeatRequest,
    registry: HiveRegistryDep,
) -> CellResponse:
    """Hardware heartbeat; no actor needed."""
    at = to_naive_utc(request.at) if request.at else None
    return _cell_to_response(await registry.record_heartbeat(cell_id, at=at))


# Fobs


@router.post("/fobs", response_model=FobResponse, status_code=201)
async def register_fob(
    request: RegisterFobRequest,
    registry: HiveRegistryDep,
    actor: ActorDep,
) -> FobResponse:
    return _fob_to_response(await registry.register_fob(actor, **request.model_dump()))


@router.get("/fobs/{fob_id}", response_model=FobResponse)
async def get_fob(fob_id: str, registry: HiveRegistryDep, actor: ActorDep) -> FobResponse:
    return _fob_to_response(await registry.get_fob(fob_id))


@router.post("/fobs/{fob_id}/damaged", response_model=FobResponse)
async def mark_fob_damaged(
    fob_id: str,
    registry: HiveRegistryDep,
    actor: ActorDep,
) -> FobResponse:
    return _fob_to_response(await registry.mark_fob_damaged(fob_id, actor))
