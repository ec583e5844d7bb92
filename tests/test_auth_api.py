from datetime import datetime, timedelta

import jwt
import pytest

from app.config import ALGORITHM, SECRET_KEY
from app.middleware import create_access_token
from app.utils.helpers import hash_pin


@pytest.fixture(scope="module")
def pin_hash():
    return hash_pin("9999")


def _staff(pin_hash, **overrides):
    row = {
        "id": 3,
        "name": "Sam",
        "role": "STAFF",
        "pin_hash": pin_hash,
        "active": 1,
        "token_version": 2,
        "failed_login_attempts": 0,
        "locked_until": None,
    }
    row.update(overrides)
    return row


class TestLogin:
    def test_success_bumps_token_version(self, anon_client, fake_db, pin_hash):
        fake_db.on("FROM staff WHERE id = %s", [_staff(pin_hash)])

        response = anon_client.post("/api/auth/login", json={"staff_id": 3, "pin": "9999"})

        assert response.status_code == 200
        token = response.json()["data"]["access_token"]
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        assert payload["staff_id"] == 3
        assert payload["token_version"] == 3
        assert payload["type"] == "access"

    def test_pin_only_login_tries_every_active_staff(self, anon_client, fake_db, pin_hash):
        fake_db.on("FROM staff WHERE active = 1", [
            _staff(hash_pin("1111"), id=2, name="Alex"),
            _staff(pin_hash),
        ])

        response = anon_client.post("/api/auth/login", json={"pin": "9999"})

        assert response.status_code == 200
        assert response.json()["data"]["staff"]["name"] == "Sam"

    def test_wrong_pin_counts_attempt(self, anon_client, fake_db, pin_hash):
        fake_db.on("FROM staff WHERE id = %s", [_staff(pin_hash, failed_login_attempts=1)])

        response = anon_client.post("/api/auth/login", json={"staff_id": 3, "pin": "1234"})

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "INVALID_CREDENTIALS"
        _, params = fake_db.statements("UPDATE staff SET failed_login_attempts = %s WHERE id")[0]
        assert params == (2, 3)

    def test_fifth_failure_locks_account(self, anon_client, fake_db, pin_hash):
        fake_db.on("FROM staff WHERE id = %s", [_staff(pin_hash, failed_login_attempts=4)])

        response = anon_client.post("/api/auth/login", json={"staff_id": 3, "pin": "1234"})

        assert response.status_code == 423
        assert fake_db.statements("locked_until = %s")
        assert fake_db.commits == 1

    def test_locked_account_rejected_before_pin_check(self, anon_client, fake_db, pin_hash):
        locked_until = datetime.now() + timedelta(minutes=10)
        fake_db.on("FROM staff WHERE id = %s", [_staff(pin_hash, locked_until=locked_until)])

        response = anon_client.post("/api/auth/login", json={"staff_id": 3, "pin": "9999"})

        assert response.status_code == 423
        assert response.json()["detail"]["error_code"] == "ACCOUNT_LOCKED"

    def test_pin_must_be_digits(self, anon_client, fake_db):
        response = anon_client.post("/api/auth/login", json={"pin": "12ab"})
        assert response.status_code == 422


class TestBearerToken:
    def _token(self, version=2, role="STAFF"):
        return create_access_token({"staff_id": 3, "name": "Sam", "role": role, "token_version": version})

    def test_me(self, anon_client, fake_db):
        fake_db.on("FROM staff WHERE id = %s", [{"id": 3, "name": "Sam", "role": "STAFF", "active": 1, "token_version": 2}])

        response = anon_client.get("/api/auth/me", headers={"Authorization": f"Bearer {self._token()}"})

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "STAFF"

    def test_revoked_token(self, anon_client, fake_db):
        fake_db.on("FROM staff WHERE id = %s", [{"id": 3, "name": "Sam", "role": "STAFF", "active": 1, "token_version": 5}])

        response = anon_client.get("/api/auth/me", headers={"Authorization": f"Bearer {self._token()}"})

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "TOKEN_REVOKED"

    def test_role_is_read_from_database(self, anon_client, fake_db):
        # token still says ADMIN but the account was demoted
        fake_db.on("FROM staff WHERE id = %s", [{"id": 3, "name": "Sam", "role": "STAFF", "active": 1, "token_version": 2}])

        response = anon_client.get(
            "/api/admin/staff",
            headers={"Authorization": f"Bearer {self._token(role='ADMIN')}"},
        )

        assert response.status_code == 403

    def test_garbage_token(self, anon_client, fake_db):
        response = anon_client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "INVALID_TOKEN"
