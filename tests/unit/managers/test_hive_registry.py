"""Unit tests for HiveRegistry.

Covers inventory operations and the reserve/release contract used by the
assignment lifecycle.
"""

from __future__ import annotations

import pytest

from keyhive.errors import (
    CellUnavailableError,
    FobUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from keyhive.managers.hive import HiveRegistry
from keyhive.models.hive import CellStatus, HiveStatus
from keyhive.models.nfc_fob import FobStatus
from tests.fakes import ADMIN, GUEST, HOST, OTHER_PARTNER, PARTNER


class TestCreateHive:
    async def test_creates_numbered_cells_and_starts_idle(self, registry: HiveRegistry, hive):
        cells = await registry.list_cells(hive.id)

        assert hive.id.startswith("hive-")
        assert hive.status == HiveStatus.IDLE
        assert hive.partner_id == PARTNER.id
        assert sorted(int(c.cell_number) for c in cells) == [1, 2, 3]
        assert all(c.status == CellStatus.AVAILABLE for c in cells)

    async def test_admin_must_name_partner(self, registry: HiveRegistry):
        with pytest.raises(ValidationError):
            await registry.create_hive(ADMIN, name="North", total_cells=2)

        hive = await registry.create_hive(ADMIN, name="North", total_cells=2, partner_id="p-9")
        assert hive.partner_id == "p-9"

    async def test_hosts_and_guests_cannot_register(self, registry: HiveRegistry):
        for actor in (HOST, GUEST):
            with pytest.raises(UnauthorizedError):
                await registry.create_hive(actor, name=f"By {actor.id}", total_cells=1)

    async def test_duplicate_name_rejected(self, registry: HiveRegistry, hive):
        with pytest.raises(ValidationError):
            await registry.create_hive(PARTNER, name=hive.name, total_cells=1)

    async def test_emits_audit_event(self, hive, audit_sink):
        assert "create" in audit_sink.actions(hive.id)


class TestStatus:
    async def test_partner_sets_hive_status(self, registry: HiveRegistry, hive):
        updated = await registry.set_hive_status(hive.id, HiveStatus.MAINTENANCE, PARTNER)
        assert updated.status == HiveStatus.MAINTENANCE

    async def test_other_partner_cannot_set_status(self, registry: HiveRegistry, hive):
        with pytest.raises(UnauthorizedError):
            await registry.set_hive_status(hive.id, HiveStatus.OFFLINE, OTHER_PARTNER)

    async def test_cell_out_of_service_is_not_available(
        self, registry: HiveRegistry, hive_id, cell_ids
    ):
        await registry.set_cell_status(cell_ids[0], CellStatus.MAINTENANCE, PARTNER)

        assert await registry.available_cell_count(hive_id) == 2
        assert cell_ids[0] not in {c.id for c in await registry.list_available_cells(hive_id)}

    async def test_occupied_cannot_be_set_manually(self, registry: HiveRegistry, cells):
        with pytest.raises(ValidationError):
            await registry.set_cell_status(cells[0].id, CellStatus.OCCUPIED, PARTNER)

    async def test_occupied_cell_cannot_go_to_maintenance(
        self, registry: HiveRegistry, hive_id, cell_ids, db_session
    ):
        assert await registry.try_reserve_cell(hive_id, cell_ids[0], "asg-1")
        await db_session.commit()

        with pytest.raises(CellUnavailableError):
            await registry.set_cell_status(cell_ids[0], CellStatus.MAINTENANCE, PARTNER)
        assert (await registry.get_cell(cell_ids[0])).status == CellStatus.OCCUPIED

    async def test_heartbeat(self, registry: HiveRegistry, cells):
        cell = await registry.record_heartbeat(cells[0].id)
        assert cell.last_heartbeat is not None


class TestReservation:
    async def test_cell_reserved_once(self, registry: HiveRegistry, hive, cells):
        assert await registry.try_reserve_cell(hive.id, cells[0].id, "asg-1")
        assert not await registry.try_reserve_cell(hive.id, cells[0].id, "asg-2")

        cell = await registry.get_cell(cells[0].id)
        assert cell.status == CellStatus.OCCUPIED
        assert await registry.available_cell_count(hive.id) == 2

    async def test_cell_of_other_hive_is_not_reserved(self, registry: HiveRegistry, cells):
        other = await registry.create_hive(PARTNER, name="Harbour", total_cells=1)

        assert not await registry.try_reserve_cell(other.id, cells[0].id, "asg-1")

    async def test_release_makes_cell_available_again(self, registry: HiveRegistry, hive, cells):
        await registry.try_reserve_cell(hive.id, cells[0].id, "asg-1")
        await registry.release_cell(cells[0].id)

        assert (await registry.get_cell(cells[0].id)).status == CellStatus.AVAILABLE
        assert await registry.try_reserve_cell(hive.id, cells[0].id, "asg-2")

    async def test_fob_reserved_once_and_bound_to_slot(self, registry: HiveRegistry, hive, fob):
        assert await registry.try_reserve_fob(hive.id, fob.id, "asg-1", slot="2")
        assert not await registry.try_reserve_fob(hive.id, fob.id, "asg-2")

        reserved = await registry.get_fob(fob.id)
        assert reserved.status == FobStatus.ASSIGNED
        assert reserved.assigned_slot == "2"

    async def test_fob_stocked_elsewhere_is_not_reserved(self, registry: HiveRegistry, fob):
        other = await registry.create_hive(PARTNER, name="Harbour", total_cells=1)

        assert not await registry.try_reserve_fob(other.id, fob.id, "asg-1")

    async def test_release_fob_keeps_hive(self, registry: HiveRegistry, hive, fob):
        await registry.try_reserve_fob(hive.id, fob.id, "asg-1", slot="1")
        await registry.release_fob(fob.id)

        released = await registry.get_fob(fob.id)
        assert released.status == FobStatus.AVAILABLE
        assert released.assigned_hive_id == hive.id
        assert released.assigned_slot is None

    async def test_mark_active_promotes_idle_hive(self, registry: HiveRegistry, hive):
        await registry.mark_active(hive.id)
        assert (await registry.get_hive(hive.id)).status == HiveStatus.ACTIVE


class TestFobs:
    async def test_register_defaults_serial(self, fob):
        assert fob.id.startswith("fob-")
        assert fob.fob_serial.startswith("SN-")
        assert fob.status == FobStatus.AVAILABLE

    async def test_duplicate_uid_rejected(self, registry: HiveRegistry, fob):
        with pytest.raises(ValidationError):
            await registry.register_fob(PARTNER, fob_uid=fob.fob_uid)

    async def test_mark_damaged(self, registry: HiveRegistry, fob_id):
        damaged = await registry.mark_fob_damaged(fob_id, PARTNER)
        assert damaged.status == FobStatus.DAMAGED

    async def test_assigned_fob_cannot_be_damaged(
        self, registry: HiveRegistry, hive_id, fob_id, db_session
    ):
        await registry.try_reserve_fob(hive_id, fob_id, "asg-1")
        await db_session.commit()

        with pytest.raises(FobUnavailableError):
            await registry.mark_fob_damaged(fob_id, PARTNER)
