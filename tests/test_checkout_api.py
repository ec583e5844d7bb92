"""Kiosk checkout requests and the staff claim/verify/complete flow"""
from datetime import datetime, timedelta

import pytest

BLOCK_BY_ID = "WHERE cb.id = %s FOR UPDATE"
REQUEST_BY_ID = "FROM checkout_requests WHERE id = %s FOR UPDATE"


def _block(ends_in_minutes=60, ended=False, **overrides):
    now = datetime.now()
    block = {
        "id": 20,
        "visit_id": 10,
        "block_type": "INITIAL",
        "starts_at": now - timedelta(hours=5),
        "ends_at": now + timedelta(minutes=ends_in_minutes),
        "rental_type": "STANDARD",
        "room_id": 3,
        "locker_id": None,
        "has_tv_remote": 1,
        "customer_id": 5,
        "visit_started_at": now - timedelta(hours=5),
        "visit_ended_at": now if ended else None,
        "customer_name": "Jordan",
        "customer_notes": None,
        "room_number": "203",
        "locker_number": None,
    }
    block.update(overrides)
    return block


def _request(**overrides):
    row = {
        "id": 1,
        "occupancy_id": 20,
        "customer_id": 5,
        "status": "SUBMITTED",
        "claimed_by_staff_id": None,
        "claimed_at": None,
        "claim_expires_at": None,
        "items_confirmed": 0,
        "fee_paid": 0,
        "late_minutes": 0,
        "late_fee_amount": 0,
        "ban_applied": 0,
    }
    row.update(overrides)
    return row


# ============== Kiosk ==============

class TestKiosk:
    def test_unknown_key(self, anon_client, fake_db):
        response = anon_client.post("/api/kiosk/checkout/resolve-key", json={"token": "NOPE"})

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "KEY_NOT_FOUND"

    def test_resolve_key(self, anon_client, fake_db):
        fake_db.on("FROM key_tags WHERE tag_code", [{"id": 77, "room_id": 3, "locker_id": None}])
        fake_db.on("WHERE cb.room_id = %s AND v.ended_at IS NULL", [_block(ends_in_minutes=-40)])

        response = anon_client.post("/api/kiosk/checkout/resolve-key", json={"token": "ROOM-203"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["key_tag_id"] == 77
        assert data["delta"]["status"] == "late"
        assert data["late_fee_amount"] == 15.0

    def test_request(self, anon_client, fake_db, published):
        fake_db.on(BLOCK_BY_ID, [_block()])
        fake_db.on("FROM key_tags WHERE room_id", [{"id": 77}])

        response = anon_client.post("/api/kiosk/checkout/request", json={
            "occupancy_id": 20,
            "kiosk_device_id": "kiosk-1",
            "checklist": {"key": True, "towel": True},
        })

        assert response.status_code == 200
        _, params = fake_db.statements("INSERT INTO checkout_requests")[0]
        assert params[2:4] == (77, "kiosk-1")
        assert [e[0] for e in published] == ["CHECKOUT_REQUESTED"]
        assert published[0][1]["status"] == "SUBMITTED"

    def test_one_open_request_per_stay(self, anon_client, fake_db, published):
        fake_db.on(BLOCK_BY_ID, [_block()])
        fake_db.on("FROM checkout_requests WHERE occupancy_id", [{"id": 3, "status": "CLAIMED"}])

        response = anon_client.post("/api/kiosk/checkout/request", json={
            "occupancy_id": 20, "kiosk_device_id": "kiosk-1",
        })

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "CHECKOUT_ALREADY_REQUESTED"
        assert published == []

    def test_ended_stay(self, anon_client, fake_db):
        fake_db.on(BLOCK_BY_ID, [_block(ended=True)])

        response = anon_client.post("/api/kiosk/checkout/request", json={
            "occupancy_id": 20, "kiosk_device_id": "kiosk-1",
        })

        assert response.status_code == 404


# ============== Claim ==============

class TestClaim:
    def test_claim_submitted(self, client, fake_db, published):
        fake_db.on(REQUEST_BY_ID, [_request()])

        response = client.post("/api/checkout/1/claim")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "CLAIMED"
        assert data["claimed_by_staff_id"] == 7
        assert published[0][0] == "CHECKOUT_CLAIMED"

    def test_live_claim_blocks_others(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [_request(
            status="CLAIMED", claimed_by_staff_id=9, claim_expires_at=datetime.now() + timedelta(minutes=1),
        )])

        response = client.post("/api/checkout/1/claim")

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "ALREADY_CLAIMED"

    def test_lapsed_claim_can_be_taken(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [_request(
            status="CLAIMED", claimed_by_staff_id=9, claim_expires_at=datetime.now() - timedelta(seconds=5),
        )])

        response = client.post("/api/checkout/1/claim")

        assert response.status_code == 200
        _, params = fake_db.statements("SET status = 'CLAIMED'")[0]
        assert params[0] == 7

    def test_verified_request_cannot_be_claimed(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [_request(status="VERIFIED")])

        assert client.post("/api/checkout/1/claim").status_code == 409

    def test_only_claimant_confirms_items(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [_request(status="CLAIMED", claimed_by_staff_id=9)])

        response = client.post("/api/checkout/1/confirm-items")

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "NOT_CLAIMANT"


# ============== Complete ==============

class TestComplete:
    def _claimed(self, **overrides):
        return _request(**{"status": "CLAIMED", "claimed_by_staff_id": 7, "items_confirmed": 1, **overrides})

    def test_items_must_be_confirmed(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [self._claimed(items_confirmed=0)])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "ITEMS_NOT_CONFIRMED"

    def test_late_fee_must_be_paid(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [self._claimed(late_fee_amount=15)])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "FEE_NOT_PAID"

    def test_ended_visit(self, client, fake_db):
        fake_db.on(REQUEST_BY_ID, [self._claimed()])
        fake_db.on(BLOCK_BY_ID, [_block(ended=True)])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "VISIT_ENDED"

    def test_very_late_checkout_bans_and_bills(self, client, fake_db, published):
        fake_db.on(REQUEST_BY_ID, [self._claimed(late_minutes=95, late_fee_amount=35, ban_applied=1, fee_paid=1)])
        fake_db.on(BLOCK_BY_ID, [_block(ends_in_minutes=-95)])
        fake_db.on("FROM waitlist WHERE visit_id = %s AND status IN", [{"id": 40, "status": "OFFERED", "room_id": 8}])
        fake_db.on("SELECT notes FROM customers", [{"notes": "VIP"}])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["late_fee_amount"] == 35.0
        assert data["ban_applied"] is True

        assert fake_db.statements("UPDATE customers SET banned_until")
        _, charge = fake_db.statements("INSERT INTO charges")[0]
        assert charge[-1] == 35.0
        _, note = fake_db.statements("SET past_due_balance = past_due_balance + %s")[0]
        assert note[1].startswith("VIP\n[SYSTEM_LATE_FEE_PENDING]")
        _, room = fake_db.statements("UPDATE rooms SET status = %s, assigned_to_customer_id = NULL")[0]
        assert room[0] == "DIRTY"
        assert fake_db.statements("SET status = 'VERIFIED'")

        assert "WAITLIST_CANCELLED" in fake_db.audit_actions()
        types = [e[0] for e in published]
        assert types[0] == "WAITLIST_UPDATED"
        assert {"ROOM_STATUS_CHANGED", "ROOM_RELEASED", "INVENTORY_UPDATED"} <= set(types)
        assert types[-1] == "CHECKOUT_COMPLETED"

    def test_late_fee_charged_once_per_block(self, client, fake_db, published):
        fake_db.on(REQUEST_BY_ID, [self._claimed(late_minutes=40, late_fee_amount=15, fee_paid=1)])
        fake_db.on(BLOCK_BY_ID, [_block(ends_in_minutes=-40)])
        fake_db.on("FROM charges WHERE checkin_block_id = %s AND type = 'LATE_FEE'", [{"id": 99}])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 200
        assert not fake_db.statements("INSERT INTO charges")
        assert fake_db.statements("INSERT INTO late_checkout_events")

    def test_bills_what_the_kiosk_showed(self, client, fake_db, published):
        # filed 20 minutes late, completed after the stay ran 95 minutes over
        fake_db.on(REQUEST_BY_ID, [self._claimed(late_minutes=20, late_fee_amount=0, fee_paid=0)])
        fake_db.on(BLOCK_BY_ID, [_block(ends_in_minutes=-95)])

        response = client.post("/api/checkout/1/complete")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["late_fee_amount"] == 0
        assert data["ban_applied"] is False
        assert not fake_db.statements("INSERT INTO charges")
        assert not fake_db.statements("UPDATE customers SET banned_until")
        _, params = fake_db.statements("SET status = 'VERIFIED'")[0]
        assert params[1] == 1


@pytest.mark.parametrize("ends_in_minutes", [30, -10])
def test_manual_complete_on_time(client, fake_db, published, ends_in_minutes):
    fake_db.on(BLOCK_BY_ID, [_block(ends_in_minutes=ends_in_minutes)])

    response = client.post("/api/checkout/manual-complete", json={"occupancy_id": 20})

    assert response.status_code == 200
    assert response.json()["data"]["late_fee_amount"] == 0
    assert not fake_db.statements("INSERT INTO late_checkout_events")
    assert fake_db.statements("UPDATE checkout_requests SET status = 'CANCELLED'")
    assert "CHECKOUT_COMPLETED" in fake_db.audit_actions()


def test_manual_resolve_needs_lookup(client, fake_db):
    response = client.post("/api/checkout/manual-resolve", json={})
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "LOOKUP_REQUIRED"


def test_manual_complete_repeat_returns_earlier_result(client, fake_db, published):
    fake_db.on(BLOCK_BY_ID, [_block(ends_in_minutes=-45, ended=True)])
    fake_db.on("FROM late_checkout_events WHERE occupancy_id = %s", [
        {"late_minutes": 45, "fee_amount": 15, "ban_applied": 0},
    ])

    response = client.post("/api/checkout/manual-complete", json={"occupancy_id": 20})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["already_checked_out"] is True
    assert data["late_fee_amount"] == 15.0
    assert not fake_db.statements("UPDATE visits SET ended_at")
    assert fake_db.commits == 0
    assert published == []


def test_manual_complete_unknown_stay(client, fake_db):
    response = client.post("/api/checkout/manual-complete", json={"occupancy_id": 99})

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "NO_ACTIVE_OCCUPANCY"
