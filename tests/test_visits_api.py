from datetime import datetime, timedelta

import pytest


def _open_visit(fake_db, block_hours, ended_at=None):
    now = datetime.now()
    fake_db.on("FROM visits WHERE id = %s FOR UPDATE", [
        {"id": 10, "customer_id": 5, "started_at": now - timedelta(hours=sum(block_hours)), "ended_at": ended_at},
    ])
    blocks = []
    starts_at = now - timedelta(hours=sum(block_hours)) + timedelta(hours=1)
    for i, hours in enumerate(block_hours):
        ends_at = starts_at + timedelta(hours=hours)
        blocks.append({
            "id": 20 + i,
            "block_type": "INITIAL" if i == 0 else "RENEWAL",
            "starts_at": starts_at,
            "ends_at": ends_at,
            "rental_type": "STANDARD",
            "room_id": 3,
            "locker_id": None,
        })
        starts_at = ends_at
    fake_db.on("FROM checkin_blocks WHERE visit_id = %s ORDER BY starts_at", blocks)
    return blocks


class TestRenew:
    def test_six_hour_renewal(self, client, fake_db):
        blocks = _open_visit(fake_db, [6])

        response = client.post("/api/visits/10/renew", json={"hours": 6})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_hours"] == 12
        assert data["block"]["block_type"] == "RENEWAL"
        assert data["block"]["starts_at"] == blocks[-1]["ends_at"].isoformat()
        assert not fake_db.statements("INSERT INTO charges")

    def test_renewal_capped_at_fourteen_hours(self, client, fake_db):
        _open_visit(fake_db, [6, 6])

        response = client.post("/api/visits/10/renew", json={"hours": 6})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "MAX_STAY_EXCEEDED"
        assert fake_db.rollbacks == 1

    def test_final_extension_after_twelve_hours(self, client, fake_db):
        _open_visit(fake_db, [6, 6])

        response = client.post("/api/visits/10/renew", json={"hours": 2})

        assert response.status_code == 200
        assert response.json()["data"]["total_hours"] == 14
        _, params = fake_db.statements("INSERT INTO charges")[0]
        assert params[2:5] == ("FINAL_EXTENSION", "Final extension (2 Hours)", 20)

    def test_final_extension_needs_twelve_hours(self, client, fake_db):
        _open_visit(fake_db, [6])

        response = client.post("/api/visits/10/renew", json={"hours": 2})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "FINAL_EXTENSION_NOT_ALLOWED"

    @pytest.mark.parametrize("hours", [1, 4, 8])
    def test_only_six_or_two(self, client, fake_db, hours):
        response = client.post("/api/visits/10/renew", json={"hours": hours})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_RENEWAL_HOURS"

    def test_ended_visit(self, client, fake_db):
        _open_visit(fake_db, [6], ended_at=datetime.now())

        response = client.post("/api/visits/10/renew", json={"hours": 6})

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "VISIT_ENDED"
