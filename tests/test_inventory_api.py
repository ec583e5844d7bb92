"""Room status changes: single rooms and cleaning-station batches"""


def _room(room_id, status, assigned=None):
    return {"id": room_id, "number": str(200 + room_id), "status": status, "assigned_to_customer_id": assigned}


class TestCleaningBatch:
    def test_partial_batch(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id IN", [
            _room(1, "DIRTY"),
            _room(2, "CLEAN"),
            _room(3, "OCCUPIED", assigned=55),
        ])

        response = client.post("/api/cleaning/batch", json={"room_ids": [1, 2, 3, 4], "target_status": "CLEANING"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"] == {"total": 4, "success": 2, "failed": 2}
        by_id = {row["room_id"]: row for row in data["rooms"]}
        assert by_id[1]["success"] and by_id[2]["success"]
        assert by_id[3]["error"] == "Room is occupied by a customer"
        assert by_id[4]["error"] == "Room not found"

        # batch stays open while any room failed
        assert not fake_db.statements("UPDATE cleaning_batches SET completed_at")
        assert len(fake_db.statements("INSERT INTO cleaning_batch_rooms")) == 2
        assert [e[0] for e in published] == ["ROOM_STATUS_CHANGED", "ROOM_STATUS_CHANGED", "INVENTORY_UPDATED"]

    def test_complete_batch_closes_it(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id IN", [_room(1, "CLEANING")])

        response = client.post("/api/cleaning/batch", json={"room_ids": [1], "target_status": "CLEAN"})

        assert response.status_code == 200
        assert fake_db.statements("UPDATE cleaning_batches SET completed_at")
        assert fake_db.audit_actions() == ["STATUS_CHANGE"]

    def test_repeated_room_ids_count_once(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id IN", [_room(1, "CLEANING"), _room(2, "CLEANING")])

        response = client.post("/api/cleaning/batch", json={"room_ids": [2, 1, 2, 1], "target_status": "CLEAN"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"] == {"total": 2, "success": 2, "failed": 0}
        assert [row["room_id"] for row in data["rooms"]] == [2, 1]
        _, params = fake_db.statements("FROM rooms WHERE id IN")[0]
        assert list(params) == [2, 1]
        assert len(fake_db.statements("INSERT INTO cleaning_batch_rooms")) == 2
        assert fake_db.audit_actions() == ["STATUS_CHANGE", "STATUS_CHANGE"]

    def test_all_rooms_failing_is_400(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id IN", [_room(1, "DIRTY")])

        response = client.post("/api/cleaning/batch", json={"room_ids": [1], "target_status": "CLEAN"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["data"]["rooms"][0]["needs_override"] is True
        assert published == []

    def test_override_records_reason(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id IN", [_room(1, "DIRTY")])

        response = client.post("/api/cleaning/batch", json={
            "room_ids": [1],
            "target_status": "CLEAN",
            "override": True,
            "override_reason": "Deep cleaned by day crew",
        })

        assert response.status_code == 200
        _, params = fake_db.statements("INSERT INTO cleaning_batch_rooms")[0]
        assert params[-2:] == (1, "Deep cleaned by day crew")
        assert fake_db.audit_actions() == ["OVERRIDE"]

    def test_override_without_reason(self, client, fake_db):
        response = client.post("/api/cleaning/batch", json={
            "room_ids": [1], "target_status": "CLEAN", "override": True,
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "OVERRIDE_REASON_REQUIRED"
        assert fake_db.executed == []


class TestRoomStatus:
    def test_skip_requires_override(self, client, fake_db):
        fake_db.on("FROM rooms WHERE id = %s FOR UPDATE", [_room(5, "DIRTY")])

        response = client.patch("/api/rooms/5/status", json={"status": "CLEAN"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "TRANSITION_REQUIRES_OVERRIDE"
        assert fake_db.rollbacks == 1

    def test_override_is_audited(self, client, fake_db, published):
        fake_db.on("FROM rooms WHERE id = %s FOR UPDATE", [_room(5, "DIRTY")])

        response = client.patch("/api/rooms/5/status", json={
            "status": "CLEAN", "override": True, "override_reason": "Inspected",
        })

        assert response.status_code == 200
        assert response.json()["data"]["override"] is True
        assert fake_db.audit_actions() == ["OVERRIDE"]
        assert published[0][1]["previous_status"] == "DIRTY"

    def test_assigned_room_is_locked(self, client, fake_db):
        fake_db.on("FROM rooms WHERE id = %s FOR UPDATE", [_room(5, "OCCUPIED", assigned=9)])

        response = client.patch("/api/rooms/5/status", json={"status": "DIRTY"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "ROOM_ASSIGNED"

    def test_unknown_status_rejected(self, client, fake_db):
        response = client.patch("/api/rooms/5/status", json={"status": "BROKEN"})

        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"


def test_available_counts_subtract_waitlist(client, fake_db):
    fake_db.on("GROUP BY r.type", [{"tier": "STANDARD", "count": 4}, {"tier": "DOUBLE", "count": 1}])
    fake_db.on("FROM lockers l", [{"count": 20}])
    fake_db.on("FROM waitlist WHERE status IN", [{"tier": "DOUBLE", "count": 2}])

    response = client.get("/api/inventory/available")

    assert response.status_code == 200
    assert response.json()["data"]["available"] == {"STANDARD": 4, "DOUBLE": 0, "SPECIAL": 0, "LOCKER": 20}
