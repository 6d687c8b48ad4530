"""HiveRegistry - authoritative record of free cells and NFC fobs.

Reservation and release run inside the caller's transaction (they never
commit) so a ConfirmDrop either reserves cell, fob and state together or
nothing at all. Inventory operations commit on their own.

Occupancy is decided by two things that change together:
- ``Cell.status`` / ``NfcFob.status`` (cached flags)
- assignments holding the resource (``resources_released_at IS NULL``)
Reservation checks both in a single conditional UPDATE.
"""

from __future__ import annotations

import secrets
from datetime import datetime

import structlog
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.concurrency.locks import hold_locks, lock_key
from keyhive.db.transaction import atomic
from keyhive.errors import (
    CellUnavailableError,
    FobUnavailableError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from keyhive.identity import Actor, ActorRole
from keyhive.models.assignment import KeyAssignment
from keyhive.models.hive import Cell, CellStatus, Hive, HiveStatus
from keyhive.models.nfc_fob import FobStatus, NfcFob
from keyhive.models.types import new_id
from keyhive.services.audit import AuditLogger
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()

# Cell states an operator may set by hand
_MANUAL_CELL_STATUSES = (CellStatus.AVAILABLE, CellStatus.MAINTENANCE, CellStatus.OFFLINE)


def _cell_held(exclude_assignment_id: str | None = None):
    """EXISTS: some assignment still holds ``cells.id``."""
    stmt = select(KeyAssignment.id).where(
        KeyAssignment.cell_id == Cell.id,
        KeyAssignment.resources_released_at.is_(None),
    )
    if exclude_assignment_id:
        stmt = stmt.where(KeyAssignment.id != exclude_assignment_id)
    return stmt.correlate(Cell).exists()


def _fob_held(exclude_assignment_id: str | None = None):
    """EXISTS: some assignment still holds ``nfc_fobs.id``."""
    stmt = select(KeyAssignment.id).where(
        KeyAssignment.nfc_fob_id == NfcFob.id,
        KeyAssignment.resources_released_at.is_(None),
    )
    if exclude_assignment_id:
        stmt = stmt.where(KeyAssignment.id != exclude_assignment_id)
    return stmt.correlate(NfcFob).exists()


class HiveRegistry:
    """Hive, cell and fob inventory with atomic reservation."""

    def __init__(
        self,
        db_session: AsyncSession,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db_session
        self._audit = audit or AuditLogger()
        self._log = logger.bind(manager="hive")

    # -- reservation (caller's transaction) --------------------------------

    async def try_reserve_cell(self, hive_id: str, cell_id: str, assignment_id: str) -> bool:
        """Mark a cell occupied if it is free.

        Returns:
            True if this call reserved the cell
        """
        result = await self._db.execute(
            update(Cell)
            .where(
                Cell.id == cell_id,
                Cell.hive_id == hive_id,
                Cell.status == CellStatus.AVAILABLE,
                ~_cell_held(assignment_id),
            )
            .values(status=CellStatus.OCCUPIED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._log.info(
                "hive.cell.reserve_failed",
                hive_id=hive_id,
                cell_id=cell_id,
                assignment_id=assignment_id,
            )
            return False

        # EXISTS criteria cannot be evaluated in-session; reload the row
        await self._db.get(Cell, cell_id, populate_existing=True)
        self._log.info("hive.cell.reserve", hive_id=hive_id, cell_id=cell_id, assignment_id=assignment_id)
        return True

    async def release_cell(self, cell_id: str) -> None:
        """Hand an occupied cell back to the pool."""
        await self._db.execute(
            update(Cell)
            .where(Cell.id == cell_id, Cell.status == CellStatus.OCCUPIED)
            .values(status=CellStatus.AVAILABLE)
            .execution_options(synchronize_session="evaluate")
        )
        self._log.info("hive.cell.release", cell_id=cell_id)

    async def try_reserve_fob(
        self,
        hive_id: str,
        fob_id: str,
        assignment_id: str,
        *,
        slot: str | None = None,
    ) -> bool:
        """Mark a fob assigned to ``hive_id`` if it is free.

        A fob stocked at another hive cannot be reserved here.

        Returns:
            True if this call reserved the fob
        """
        result = await self._db.execute(
            update(NfcFob)
            .where(
                NfcFob.id == fob_id,
                NfcFob.status == FobStatus.AVAILABLE,
                (NfcFob.assigned_hive_id.is_(None)) | (NfcFob.assigned_hive_id == hive_id),
                ~_fob_held(assignment_id),
            )
            .values(
                status=FobStatus.ASSIGNED,
                assigned_hive_id=hive_id,
                assigned_slot=slot,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._log.info(
                "hive.fob.reserve_failed",
                hive_id=hive_id,
                fob_id=fob_id,
                assignment_id=assignment_id,
            )
            return False

        await self._db.get(NfcFob, fob_id, populate_existing=True)
        self._log.info("hive.fob.reserve", hive_id=hive_id, fob_id=fob_id, assignment_id=assignment_id)
        return True

    async def release_fob(self, fob_id: str) -> None:
        """Hand an assigned fob back; it stays stocked at its hive."""
        await self._db.execute(
            update(NfcFob)
            .where(NfcFob.id == fob_id, NfcFob.status == FobStatus.ASSIGNED)
            .values(status=FobStatus.AVAILABLE, assigned_slot=None, updated_at=utcnow())
            .execution_options(synchronize_session="evaluate")
        )
        self._log.info("hive.fob.release", fob_id=fob_id)

    async def mark_active(self, hive_id: str) -> None:
        """Promote an idle hive once it receives its first key."""
        await self._db.execute(
            update(Hive)
            .where(Hive.id == hive_id, Hive.status == HiveStatus.IDLE)
            .values(status=HiveStatus.ACTIVE)
            .execution_options(synchronize_session="evaluate")
        )

    # -- queries -----------------------------------------------------------

    async def get_hive(self, hive_id: str) -> Hive:
        result = await self._db.execute(select(Hive).where(Hive.id == hive_id))
        hive = result.scalars().first()
        if hive is None:
            raise NotFoundError(f"Hive not found: {hive_id}")
        return hive

    async def list_hives(self, *, partner_id: str | None = None) -> list[Hive]:
        query = select(Hive).order_by(Hive.created_at, Hive.id)
        if partner_id is not None:
            query = query.where(Hive.partner_id == partner_id)
        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def get_cell(self, cell_id: str) -> Cell:
        result = await self._db.execute(select(Cell).where(Cell.id == cell_id))
        cell = result.scalars().first()
        if cell is None:
            raise NotFoundError(f"Cell not found: {cell_id}")
        return cell

    async def list_cells(self, hive_id: str) -> list[Cell]:
        result = await self._db.execute(
            select(Cell).where(Cell.hive_id == hive_id).order_by(Cell.created_at, Cell.id)
        )
        return list(result.scalars().all())

    async def list_available_cells(self, hive_id: str) -> list[Cell]:
        """Cells that a drop could reserve right now."""
        result = await self._db.execute(
            select(Cell)
            .where(
                Cell.hive_id == hive_id,
                Cell.status == CellStatus.AVAILABLE,
                ~_cell_held(),
            )
            .order_by(Cell.created_at, Cell.id)
        )
        return list(result.scalars().all())

    async def available_cell_count(self, hive_id: str) -> int:
        result = await self._db.execute(
            select(func.count())
            .select_from(Cell)
            .where(
                Cell.hive_id == hive_id,
                Cell.status == CellStatus.AVAILABLE,
                ~_cell_held(),
            )
        )
        return int(result.scalar_one())

    async def get_fob(self, fob_id: str) -> NfcFob:
        result = await self._db.execute(select(NfcFob).where(NfcFob.id == fob_id))
        fob = result.scalars().first()
        if fob is None:
            raise NotFoundError(f"NFC fob not found: {fob_id}")
        return fob

    # -- inventory (own transaction) ---------------------------------------

    def _require_operator(self, actor: Actor, hive: Hive) -> None:
        if not actor.is_any(hive.partner_id):
            raise UnauthorizedError(
                "Only the hive partner or an admin may change this hive",
                details={"hive_id": hive.id},
            )

    async def create_hive(
        self,
        actor: Actor,
        *,
        name: str,
        total_cells: int,
        partner_id: str | None = None,
        location_name: str | None = None,
        address: str | None = None,
        city: str | None = None,
        country: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> Hive:
        """Register a hive with cells numbered ``1..total_cells``.

        Partners register hives for themselves; admins must name the partner.
        """
        if actor.role == ActorRole.PARTNER:
            if partner_id not in (None, actor.id):
                raise UnauthorizedError("Partners can only register their own hives")
            partner_id = actor.id
        elif not actor.is_admin:
            raise UnauthorizedError("Only partners and admins may register hives")
        if not partner_id:
            raise ValidationError("partner_id is required")
        if total_cells < 1:
            raise ValidationError("total_cells must be at least 1")

        existing = await self._db.execute(select(Hive.id).where(Hive.name == name))
        if existing.first() is not None:
            raise ValidationError(f"Hive name already in use: {name}")

        hive = Hive(
            id=new_id("hive"),
            partner_id=partner_id,
            name=name,
            location_name=location_name,
            address=address,
            city=city,
            country=country,
            latitude=latitude,
            longitude=longitude,
            total_cells=total_cells,
            status=HiveStatus.IDLE,
            created_at=utcnow(),
        )
        async with atomic(self._db):
            self._db.add(hive)
            for number in range(1, total_cells + 1):
                self._db.add(
                    Cell(
                        id=new_id("cell"),
                        hive_id=hive.id,
                        cell_number=str(number),
                        status=CellStatus.AVAILABLE,
                    )
                )
        await self._db.refresh(hive)

        self._log.info("hive.create", hive_id=hive.id, partner_id=partner_id, total_cells=total_cells)
        await self._audit.emit(
            "hive", hive.id, "create", actor=actor, name=name, total_cells=total_cells
        )
        return hive

    async def set_hive_status(self, hive_id: str, status: HiveStatus, actor: Actor) -> Hive:
        status = HiveStatus(status)
        async with atomic(self._db):
            hive = await self.get_hive(hive_id)
            self._require_operator(actor, hive)
            previous = HiveStatus(hive.status)
            hive.status = status

        self._log.info("hive.set_status", hive_id=hive_id, status=status.value)
        await self._audit.emit(
            "hive", hive_id, "set_status", actor=actor, previous=previous.value, status=status.value
        )
        return hive

    async def set_cell_status(self, cell_id: str, status: CellStatus, actor: Actor) -> Cell:
        """Take a cell in or out of service.

        ``occupied`` is only ever set by reservation, and a cell holding a
        key cannot be taken out of service.
        """
        status = CellStatus(status)
        if status not in _MANUAL_CELL_STATUSES:
            raise ValidationError(f"Cell status cannot be set manually: {status.value}")

        async with hold_locks(lock_key("cell", cell_id)):
            await self._db.rollback()
            async with atomic(self._db):
                cell = await self.get_cell(cell_id)
                hive = await self.get_hive(cell.hive_id)
                self._require_operator(actor, hive)

                held = await self._db.execute(
                    select(KeyAssignment.id).where(
                        KeyAssignment.cell_id == cell_id,
                        KeyAssignment.resources_released_at.is_(None),
                    )
                )
                if cell.status == CellStatus.OCCUPIED or held.first() is not None:
                    raise CellUnavailableError(
                        "Cell holds a key", details={"cell_id": cell_id}
                    )
                cell.status = status

        self._log.info("hive.cell.set_status", cell_id=cell_id, status=status.value)
        await self._audit.emit("cell", cell_id, "set_status", actor=actor, status=status.value)
        return cell

    async def record_heartbeat(self, cell_id: str, *, at: datetime | None = None) -> Cell:
        """Record a hardware heartbeat for a cell."""
        async with atomic(self._db):
            cell = await self.get_cell(cell_id)
            cell.last_heartbeat = at or utcnow()
        self._log.debug("hive.cell.heartbeat", cell_id=cell_id)
        return cell

    async def register_fob(
        self,
        actor: Actor,
        *,
        fob_uid: str,
        fob_serial: str | None = None,
        fob_name: str | None = None,
        hive_id: str | None = None,
    ) -> NfcFob:
        """Register a new fob, optionally stocked at a hive."""
        if hive_id is not None:
            self._require_operator(actor, await self.get_hive(hive_id))
        elif not actor.is_admin and actor.role != ActorRole.PARTNER:
            raise UnauthorizedError("Only partners and admins may register fobs")

        existing = await self._db.execute(select(NfcFob.id).where(NfcFob.fob_uid == fob_uid))
        if existing.first() is not None:
            raise ValidationError(f"Fob already registered: {fob_uid}")

        now = utcnow()
        fob = NfcFob(
            id=new_id("fob"),
            fob_uid=fob_uid,
            fob_serial=fob_serial or f"SN-{secrets.token_hex(6).upper()}",
            fob_name=fob_name,
            status=FobStatus.AVAILABLE,
            assigned_hive_id=hive_id,
            created_at=now,
            updated_at=now,
        )
        async with atomic(self._db):
            self._db.add(fob)
        await self._db.refresh(fob)

        self._log.info("hive.fob.register", fob_id=fob.id, fob_uid=fob_uid, hive_id=hive_id)
        await self._audit.emit("nfc_fob", fob.id, "register", actor=actor, fob_uid=fob_uid)
        return fob

    async def mark_fob_damaged(self, fob_id: str, actor: Actor) -> NfcFob:
        """Retire a fob. Not allowed while it is bound to an assignment."""
        async with hold_locks(lock_key("fob", fob_id)):
            await self._db.rollback()
            async with atomic(self._db):
                fob = await self.get_fob(fob_id)
                if fob.assigned_hive_id is not None:
                    self._require_operator(actor, await self.get_hive(fob.assigned_hive_id))
                elif not actor.is_admin:
                    raise UnauthorizedError("Only an admin may retire an unstocked fob")

                held = await self._db.execute(
                    select(KeyAssignment.id).where(
                        KeyAssignment.nfc_fob_id == fob_id,
                        KeyAssignment.resources_released_at.is_(None),
                    )
                )
                if fob.status == FobStatus.ASSIGNED or held.first() is not None:
                    raise FobUnavailableError(
                        "Fob is bound to an assignment", details={"fob_id": fob_id}
                    )
                fob.status = FobStatus.DAMAGED
                fob.updated_at = utcnow()

        self._log.info("hive.fob.damaged", fob_id=fob_id)
        await self._audit.emit("nfc_fob", fob_id, "mark_damaged", actor=actor)
        return fob
