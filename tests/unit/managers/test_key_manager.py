"""Unit tests for KeyManager and derived key status."""

from __future__ import annotations

import pytest

from keyhive.errors import KeyAlreadyActiveError, NotFoundError, UnauthorizedError, ValidationError
from keyhive.managers.key import KeyManager
from keyhive.models.key import KeyStatus, KeyType, PackageType
from tests.fakes import ADMIN, GUEST, HOST, OTHER_HOST, PARTNER


class TestCreate:
    async def test_host_registers_own_key(self, key):
        assert key.id.startswith("key-")
        assert key.host_id == HOST.id
        assert key.key_type == KeyType.MASTER
        assert key.package_type == PackageType.WEEKLY

    async def test_new_key_status_is_created(self, key_manager: KeyManager, key):
        assert await key_manager.status(key) == KeyStatus.CREATED

    async def test_host_cannot_register_for_another_host(self, key_manager: KeyManager):
        with pytest.raises(UnauthorizedError):
            await key_manager.create(HOST, label="Back door", host_id=OTHER_HOST.id)

    async def test_admin_registers_for_host(self, key_manager: KeyManager):
        key = await key_manager.create(
            ADMIN, label="Garage", host_id=OTHER_HOST.id, package_type=PackageType.MONTHLY
        )
        assert key.host_id == OTHER_HOST.id
        assert key.package_type == PackageType.MONTHLY

    async def test_admin_must_name_host(self, key_manager: KeyManager):
        with pytest.raises(ValidationError):
            await key_manager.create(ADMIN, label="Garage")

    async def test_partner_and_guest_cannot_register(self, key_manager: KeyManager):
        for actor in (PARTNER, GUEST):
            with pytest.raises(UnauthorizedError):
                await key_manager.create(actor, label="Nope")


class TestRead:
    async def test_other_host_sees_not_found(self, key_manager: KeyManager, key_id):
        with pytest.raises(NotFoundError):
            await key_manager.get(key_id, OTHER_HOST)

    async def test_list_filters_by_host(self, key_manager: KeyManager, key_id):
        await key_manager.create(OTHER_HOST, label="Other")

        items = await key_manager.list(host_id=HOST.id)

        assert [i.key.id for i in items] == [key_id]
        assert items[0].status == KeyStatus.CREATED


class TestUpdate:
    async def test_updates_editable_fields(self, key_manager: KeyManager, key_id):
        key = await key_manager.update(key_id, HOST, label="Front door (new lock)", notes="blue tag")

        assert key.label == "Front door (new lock)"
        assert key.notes == "blue tag"

    async def test_rejects_unknown_fields(self, key_manager: KeyManager, key_id):
        with pytest.raises(ValidationError):
            await key_manager.update(key_id, HOST, host_id=OTHER_HOST.id)


class TestDelete:
    async def test_soft_delete_hides_key(self, key_manager: KeyManager, key_id):
        await key_manager.delete(key_id, HOST)

        with pytest.raises(NotFoundError):
            await key_manager.get(key_id)

    async def test_delete_blocked_while_assignment_active(
        self, key_manager: KeyManager, assignment_manager, key_id
    ):
        await assignment_manager.create(key_id, HOST)

        with pytest.raises(KeyAlreadyActiveError):
            await key_manager.delete(key_id, HOST)

        assert (await key_manager.get(key_id)).deleted_at is None

    async def test_deleted_key_cannot_be_assigned(
        self, key_manager: KeyManager, assignment_manager, key_id
    ):
        await key_manager.delete(key_id, HOST)

        with pytest.raises(NotFoundError):
            await assignment_manager.create(key_id, HOST)
