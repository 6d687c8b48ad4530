"""HTTP-level tests for the v1 API."""

from __future__ import annotations

import pytest

from keyhive import __version__
from keyhive.config import Settings
from keyhive.models.assignment import AssignmentState
from tests.fakes import ADMIN, GUEST, HOST, OTHER_HOST, PARTNER, as_actor


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__}


class TestActorHeaders:
    async def test_incomplete_identity(self, client, key_id):
        resp = await client.get(f"/v1/keys/{key_id}", headers={"X-Actor-Id": HOST.id})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    async def test_unknown_role(self, client, key_id):
        resp = await client.get(
            f"/v1/keys/{key_id}", headers={"X-Actor-Id": HOST.id, "X-Actor-Role": "janitor"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    async def test_anonymous_is_system_admin(self, client, key_id):
        resp = await client.get(f"/v1/keys/{key_id}")
        assert resp.status_code == 200

    async def test_anonymous_refused_when_disabled(self, client, key_id, monkeypatch):
        locked = Settings(security={"allow_anonymous": False})
        monkeypatch.setattr("keyhive.api.dependencies.get_settings", lambda: locked)

        resp = await client.get(f"/v1/keys/{key_id}")
        assert resp.status_code == 401


class TestErrorEnvelope:
    async def test_not_found_hides_foreign_resources(self, client, key_id):
        resp = await client.get(f"/v1/keys/{key_id}", headers=as_actor(OTHER_HOST))
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "not_found"
        assert error["message"]
        assert "request_id" in error

    async def test_request_id_round_trip(self, client, drive):
        asg_id = await drive(AssignmentState.PENDING_DROP)
        resp = await client.post(
            f"/v1/assignments/{asg_id}/close",
            headers={**as_actor(HOST), "X-Request-Id": "req-123"},
        )
        assert resp.status_code == 409
        assert resp.headers["X-Request-Id"] == "req-123"
        error = resp.json()["error"]
        assert error["code"] == "wrong_state"
        assert error["request_id"] == "req-123"
        assert error["details"]["current_state"] == "pending_drop"
        assert error["details"]["expected_states"] == ["returned_confirmed"]


class TestKeys:
    async def test_create_and_list(self, client):
        resp = await client.post(
            "/v1/keys",
            json={"label": "Cellar", "package_type": "monthly"},
            headers=as_actor(HOST),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["host_id"] == HOST.id
        assert body["status"] == "created"
        assert body["package_type"] == "monthly"

        await client.post("/v1/keys", json={"label": "Other"}, headers=as_actor(OTHER_HOST))

        resp = await client.get("/v1/keys", headers=as_actor(HOST))
        assert [k["label"] for k in resp.json()["items"]] == ["Cellar"]

    async def test_update_and_delete(self, client, key_id):
        resp = await client.patch(
            f"/v1/keys/{key_id}", json={"notes": "Blue tag"}, headers=as_actor(HOST)
        )
        assert resp.status_code == 200
        assert resp.json()["notes"] == "Blue tag"

        resp = await client.delete(f"/v1/keys/{key_id}", headers=as_actor(HOST))
        assert resp.status_code == 204
        resp = await client.get(f"/v1/keys/{key_id}", headers=as_actor(HOST))
        assert resp.status_code == 404

    async def test_delete_refused_while_assigned(self, client, drive, key_id):
        await drive(AssignmentState.AVAILABLE)
        resp = await client.delete(f"/v1/keys/{key_id}", headers=as_actor(HOST))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "key_already_active"


class TestAssignmentFlow:
    async def test_full_cycle_over_http(self, client, key_id, hive_id, cell_ids, fob_id):
        host, partner, guest = as_actor(HOST), as_actor(PARTNER), as_actor(GUEST)

        resp = await client.post(f"/v1/keys/{key_id}/assignments", headers=host)
        assert resp.status_code == 201
        asg_id = resp.json()["id"]
        assert resp.json()["state"] == "pending_drop"
        assert "drop_off_code" not in resp.json()

        resp = await client.post(f"/v1/keys/{key_id}/assignments", headers=host)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "key_already_active"

        resp = await client.post(
            f"/v1/assignments/{asg_id}/schedule-drop",
            json={"hive_id": hive_id, "scheduled_at": "2030-01-01T09:00:00+02:00"},
            headers=host,
        )
        assert resp.status_code == 200
        assert resp.json()["partner_id"] == PARTNER.id
        assert resp.json()["scheduled_drop_at"].startswith("2030-01-01T07:00:00")

        resp = await client.get(f"/v1/assignments/{asg_id}/drop-off-code", headers=partner)
        drop_off_code = resp.json()["drop_off_code"]

        resp = await client.post(
            f"/v1/assignments/{asg_id}/confirm-drop",
            json={"cell_id": cell_ids[0], "nfc_fob_id": fob_id, "drop_off_code": drop_off_code},
            headers=partner,
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "available"

        resp = await client.post(f"/v1/assignments/{asg_id}/magic-link", headers=host)
        assert resp.status_code == 201
        token = resp.json()["token"]

        resp = await client.get(f"/v1/guest/pickup/{token}")
        assert resp.status_code == 200
        pickup = resp.json()
        assert pickup["cell_number"] == "1"
        code = pickup["pickup_code"]

        resp = await client.get(f"/v1/assignments/{asg_id}/pickup-code", headers=host)
        assert resp.json()["pickup_code"] == code

        resp = await client.post(
            f"/v1/assignments/{asg_id}/validate-pickup", json={"code": "WRONG234"}, headers=guest
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_code"

        resp = await client.post(
            f"/v1/assignments/{asg_id}/validate-pickup", json={"code": code}, headers=guest
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "picked_up"
        assert resp.json()["guest_id"] == GUEST.id

        resp = await client.post(
            f"/v1/assignments/{asg_id}/validate-pickup", json={"code": code}, headers=guest
        )
        assert resp.status_code == 409

        for step in ("mark-in-use", "initiate-return"):
            resp = await client.post(f"/v1/assignments/{asg_id}/{step}", headers=guest)
            assert resp.status_code == 200

        resp = await client.post(
            f"/v1/assignments/{asg_id}/confirm-return",
            json={"cell_id": cell_ids[0]},
            headers=partner,
        )
        assert resp.json()["state"] == "returned_confirmed"

        resp = await client.post(f"/v1/assignments/{asg_id}/close", headers=host)
        assert resp.json()["state"] == "closed"

        resp = await client.get(f"/v1/keys/{key_id}/assignments", headers=host)
        assert [a["id"] for a in resp.json()] == [asg_id]
        resp = await client.get(f"/v1/keys/{key_id}", headers=host)
        assert resp.json()["status"] == "closed"

    async def test_assign_guest(self, client, drive):
        asg_id = await drive(AssignmentState.AVAILABLE)
        resp = await client.put(
            f"/v1/assignments/{asg_id}/guest", json={"guest_id": GUEST.id}, headers=as_actor(HOST)
        )
        assert resp.status_code == 200
        assert resp.json()["guest_id"] == GUEST.id

        resp = await client.get(f"/v1/assignments/{asg_id}", headers=as_actor(GUEST))
        assert resp.status_code == 200

    async def test_cell_conflict(self, client, drive, key_manager, hive_id, cell_ids):
        await drive(AssignmentState.AVAILABLE)
        other_key_id = (await key_manager.create(HOST, label="Back door")).id

        resp = await client.post(f"/v1/keys/{other_key_id}/assignments", headers=as_actor(HOST))
        asg_id = resp.json()["id"]
        await client.post(
            f"/v1/assignments/{asg_id}/schedule-drop",
            json={"hive_id": hive_id, "scheduled_at": "2030-01-01T09:00:00Z"},
            headers=as_actor(HOST),
        )
        resp = await client.post(
            f"/v1/assignments/{asg_id}/confirm-drop",
            json={"cell_id": cell_ids[0]},
            headers=as_actor(PARTNER),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "cell_unavailable"


class TestDisputes:
    async def test_open_investigate_resolve(self, client, drive, cell_ids):
        asg_id = await drive(AssignmentState.IN_USE)

        resp = await client.post(
            f"/v1/assignments/{asg_id}/disputes",
            json={"reason": "Key snapped", "evidence": {"photo": "key.jpg"}},
            headers=as_actor(GUEST),
        )
        assert resp.status_code == 201
        dispute = resp.json()
        assert dispute["status"] == "open"
        assert dispute["prior_state"] == "in_use"

        resp = await client.post(
            f"/v1/assignments/{asg_id}/disputes",
            json={"reason": "Again"},
            headers=as_actor(HOST),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "dispute_already_open"

        resp = await client.post(
            f"/v1/disputes/{dispute['id']}/investigate", headers=as_actor(HOST)
        )
        assert resp.status_code == 403
        resp = await client.post(
            f"/v1/disputes/{dispute['id']}/investigate", headers=as_actor(ADMIN)
        )
        assert resp.json()["status"] == "investigating"

        resp = await client.post(
            f"/v1/disputes/{dispute['id']}/resolve",
            json={"resolution": "Replacement cut", "outcome": "force_close"},
            headers=as_actor(ADMIN),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        assert resp.json()["outcome"] == "force_close"

        resp = await client.get(f"/v1/assignments/{asg_id}", headers=as_actor(HOST))
        assert resp.json()["state"] == "closed"

        resp = await client.get(f"/v1/hives/{resp.json()['hive_id']}/cells?available=true")
        assert cell_ids[0] in [c["id"] for c in resp.json()]

        resp = await client.get(f"/v1/assignments/{asg_id}/disputes", headers=as_actor(GUEST))
        assert [d["id"] for d in resp.json()] == [dispute["id"]]


class TestHives:
    async def test_register_hive_and_fob(self, client):
        partner = as_actor(PARTNER)
        resp = await client.post(
            "/v1/hives", json={"name": "Old Town", "total_cells": 2, "city": "Lyon"}, headers=partner
        )
        assert resp.status_code == 201
        hive = resp.json()
        assert hive["partner_id"] == PARTNER.id
        assert hive["status"] == "idle"
        assert hive["available_cells"] == 2

        resp = await client.get(f"/v1/hives/{hive['id']}/cells", headers=partner)
        cells = resp.json()
        assert [c["cell_number"] for c in cells] == ["1", "2"]

        resp = await client.put(
            f"/v1/cells/{cells[0]['id']}/status", json={"status": "maintenance"}, headers=partner
        )
        assert resp.json()["status"] == "maintenance"
        resp = await client.get(f"/v1/hives/{hive['id']}", headers=partner)
        assert resp.json()["available_cells"] == 1

        resp = await client.post(
            "/v1/fobs", json={"fob_uid": "04:FF:00:11", "hive_id": hive["id"]}, headers=partner
        )
        assert resp.status_code == 201
        assert resp.json()["assigned_hive_id"] == hive["id"]

        resp = await client.post(
            "/v1/fobs", json={"fob_uid": "04:FF:00:11"}, headers=partner
        )
        assert resp.status_code == 400

    async def test_partners_see_own_hives(self, client, hive_id):
        await client.post(
            "/v1/hives",
            json={"name": "Admin Made", "total_cells": 1, "partner_id": "partner-9"},
            headers=as_actor(ADMIN),
        )
        resp = await client.get("/v1/hives", headers=as_actor(PARTNER))
        assert [h["id"] for h in resp.json()] == [hive_id]

    async def test_status_change_by_other_partner(self, client, hive_id):
        resp = await client.put(
            f"/v1/hives/{hive_id}/status",
            json={"status": "offline"},
            headers={"X-Actor-Id": "partner-2", "X-Actor-Role": "partner"},
        )
        assert resp.status_code == 403


class TestTokenValidation:
    @pytest.fixture
    async def pickup(self, drive, assignment_manager):
        asg_id = await drive(AssignmentState.AVAILABLE)
        return asg_id, await assignment_manager.request_pickup_code(asg_id, HOST)

    async def test_peek_then_redeem(self, client, pickup):
        asg_id, code = pickup

        resp = await client.post(
            "/v1/tokens/validate", json={"token": code, "consume": False}, headers=as_actor(GUEST)
        )
        assert resp.status_code == 200
        assert resp.json() == {"assignment_id": asg_id, "state": None}

        resp = await client.post("/v1/tokens/validate", json={"token": code}, headers=as_actor(GUEST))
        assert resp.status_code == 200
        assert resp.json() == {"assignment_id": asg_id, "state": "picked_up"}

        resp = await client.post("/v1/tokens/validate", json={"token": code}, headers=as_actor(GUEST))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "wrong_state"

    async def test_peek_does_not_block_pickup(self, client, pickup):
        asg_id, code = pickup

        resp = await client.post(
            "/v1/tokens/validate", json={"token": code, "consume": False}, headers=as_actor(GUEST)
        )
        assert resp.status_code == 200

        resp = await client.post(
            f"/v1/assignments/{asg_id}/validate-pickup", json={"code": code}, headers=as_actor(GUEST)
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "picked_up"

    async def test_drop_off_code_rejected(self, client, drive, assignment_manager):
        asg_id = await drive(AssignmentState.PENDING_DROP)
        code = await assignment_manager.request_drop_off_code(asg_id, HOST)

        resp = await client.post(
            "/v1/tokens/validate", json={"token": code}, headers=as_actor(PARTNER)
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    async def test_requires_identity(self, client, pickup, monkeypatch):
        _, code = pickup
        monkeypatch.setattr(
            "keyhive.api.dependencies.get_settings",
            lambda: Settings(security={"allow_anonymous": False}),
        )

        resp = await client.post("/v1/tokens/validate", json={"token": code})
        assert resp.status_code == 401

    async def test_unknown_token(self, client):
        resp = await client.post("/v1/tokens/validate", json={"token": "NOPE2345"})
        assert resp.status_code == 404
