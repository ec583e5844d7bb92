from datetime import datetime, timedelta

from app.config import UPGRADE_HOLD_MINUTES
from app.tasks.waitlist_jobs import job_expire_waitlist, job_upgrade_hold_tick

NOW = datetime(2024, 1, 8, 21, 0)


def test_expire_waitlist(fake_db, published):
    fake_db.on("WHERE w.status IN ('ACTIVE', 'OFFERED')", [{"id": 40}, {"id": 41}])

    assert job_expire_waitlist(NOW) == 2

    assert len(fake_db.statements("UPDATE waitlist SET status = 'EXPIRED'")) == 2
    releases = fake_db.statements("UPDATE inventory_reservations SET released_at")
    assert [params[1] for _, params in releases] == ["EXPIRED", "EXPIRED"]
    assert fake_db.commits == 1
    assert [e[1]["status"] for e in published] == ["EXPIRED", "EXPIRED"]


def test_expire_waitlist_rolls_back_on_error(fake_db, published):
    def explode(params):
        raise RuntimeError("deadlock")

    fake_db.on("WHERE w.status IN ('ACTIVE', 'OFFERED')", explode)

    assert job_expire_waitlist(NOW) == 0
    assert fake_db.rollbacks == 1
    assert published == []


def test_hold_tick_expires_then_offers(fake_db, published):
    fake_db.on("WHERE status = 'OFFERED' AND offer_expires_at <= %s", [{"id": 40, "room_id": 8}])
    fake_db.on("FROM rooms r WHERE r.status = 'CLEAN'", [
        {"id": 8, "number": "216", "type": "DOUBLE"},
        {"id": 9, "number": "225", "type": "DOUBLE"},
    ])
    fake_db.on("WHERE w.status = 'ACTIVE' AND w.desired_tier = %s", [{"id": 41}], times=1)

    result = job_upgrade_hold_tick(NOW)

    assert result == {"expired": 1, "offered": 1}
    _, reverted = fake_db.statements("SET status = 'ACTIVE', room_id = NULL")[0]
    assert reverted == (NOW, 40)
    _, hold = fake_db.statements("INSERT INTO inventory_reservations")[0]
    assert hold == (8, 41, NOW + timedelta(minutes=UPGRADE_HOLD_MINUTES))
    assert [e[0] for e in published] == [
        "UPGRADE_OFFER_EXPIRED", "WAITLIST_UPDATED", "UPGRADE_HOLD_AVAILABLE", "WAITLIST_UPDATED",
    ]


def test_hold_tick_with_nothing_to_do(fake_db, published):
    assert job_upgrade_hold_tick(NOW) == {"expired": 0, "offered": 0}
    assert fake_db.commits == 1
    assert published == []
