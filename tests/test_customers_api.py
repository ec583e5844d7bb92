from datetime import datetime, timedelta
from decimal import Decimal

from app.routers.ops.customers import ban_remaining_days

NOTE = "[SYSTEM_LATE_FEE_PENDING] Late fee ($15.00): customer was 45 minutes late on last visit on 2024-01-08."
NOW = datetime(2024, 1, 8, 21, 0)


def _error(response):
    return response.json()["detail"]["error_code"]


def test_ban_remaining_days_rounds_up():
    assert ban_remaining_days(None, NOW) == 0
    assert ban_remaining_days(NOW - timedelta(minutes=1), NOW) == 0
    assert ban_remaining_days(NOW + timedelta(hours=1), NOW) == 1
    assert ban_remaining_days(NOW + timedelta(days=29, hours=23), NOW) == 30


def test_search_paginates(client, fake_db):
    fake_db.on("SELECT COUNT(*) as total FROM customers", [{"total": 1}])
    fake_db.on("ORDER BY c.name ASC", [{
        "id": 5, "name": "Alex", "dob": None, "membership_number": "1234",
        "membership_card_type": "NONE", "membership_valid_until": None,
        "banned_until": datetime.now() + timedelta(days=3), "past_due_balance": Decimal("35.00"),
    }])

    response = client.get("/api/customers", params={"search": "12"})

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"]["total"] == 1
    customer = body["data"][0]
    assert customer["is_banned"] is True
    assert customer["past_due_balance"] == 35.0
    _, params = fake_db.statements("SELECT COUNT(*) as total FROM customers")[0]
    assert params == ["%12%", "%12%"]


def test_detail_not_found(client, fake_db):
    response = client.get("/api/customers/99")

    assert response.status_code == 404
    assert _error(response) == "CUSTOMER_NOT_FOUND"


def test_duplicate_membership_number(client, fake_db):
    fake_db.on("FROM customers WHERE membership_number = %s", [{"id": 5}])

    response = client.post("/api/customers", json={"name": "Alex", "membership_number": "1234"})

    assert response.status_code == 409
    assert _error(response) == "MEMBERSHIP_NUMBER_EXISTS"
    assert fake_db.rollbacks == 1


def test_create_customer(client, fake_db):
    response = client.post("/api/customers", json={"name": "Alex", "dob": "2001-05-04"})

    assert response.status_code == 201
    assert response.json()["data"]["id"] == 101
    assert fake_db.audit_actions() == ["CUSTOMER_CREATED"]


class TestNotes:
    def _customer(self, fake_db, notes):
        fake_db.on("SELECT id, notes FROM customers WHERE id = %s FOR UPDATE", [{"id": 5, "notes": notes}])

    def test_keeps_system_lines(self, client, fake_db):
        self._customer(fake_db, f"old staff note\n{NOTE}")

        response = client.patch("/api/customers/5/notes", json={"notes": "prefers room 216"})

        assert response.status_code == 200
        assert response.json()["data"]["notes"] == f"prefers room 216\n{NOTE}"

    def test_staff_cannot_forge_system_lines(self, client, fake_db):
        self._customer(fake_db, None)

        response = client.patch("/api/customers/5/notes", json={"notes": f"hello\n{NOTE}"})

        assert response.json()["data"]["notes"] == "hello"

    def test_clear_late_fee_notes(self, client, fake_db):
        self._customer(fake_db, NOTE)

        response = client.patch("/api/customers/5/notes", json={"notes": None, "clear_late_fee_notes": True})

        assert response.json()["data"]["notes"] is None
        assert fake_db.audit_actions() == ["CUSTOMER_NOTES_UPDATED"]


class TestPastDue:
    def _customer(self, fake_db, balance, notes=NOTE):
        fake_db.on("SELECT id, past_due_balance, notes FROM customers", [
            {"id": 5, "past_due_balance": Decimal(balance), "notes": notes},
        ])

    def test_full_payment_strips_notes(self, client, fake_db):
        self._customer(fake_db, "35.00")

        response = client.post("/api/customers/5/past-due/clear", json={"amount_paid": 35})

        assert response.status_code == 200
        assert response.json()["data"]["past_due_balance"] == 0.0
        _, params = fake_db.statements("UPDATE customers SET past_due_balance")[0]
        assert params == (0.0, None, 5)
        assert fake_db.audit_actions() == ["PAST_DUE_CLEARED"]

    def test_partial_payment_keeps_notes(self, client, fake_db):
        self._customer(fake_db, "35.00")

        response = client.post("/api/customers/5/past-due/clear", json={"amount_paid": 20})

        assert response.json()["data"]["past_due_balance"] == 15.0
        _, params = fake_db.statements("UPDATE customers SET past_due_balance")[0]
        assert params == (15.0, NOTE, 5)

    def test_nothing_owed(self, client, fake_db):
        self._customer(fake_db, "0.00")

        response = client.post("/api/customers/5/past-due/clear", json={"amount_paid": 10})

        assert response.status_code == 400
        assert _error(response) == "NO_PAST_DUE"
