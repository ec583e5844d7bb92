"""
Pytest fixtures for the Club Ops API.

Endpoints run against a scripted fake connection: each test registers the
rows a query should return by a fragment of its SQL, then inspects the
statements the handler executed.
"""
import os
import sys

import pytest

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret")

from fastapi.testclient import TestClient  # noqa: E402

from main import app  # noqa: E402
from app.middleware import verify_bearer_token  # noqa: E402

STAFF_AUTH = {"staff_id": 7, "name": "Front Desk", "role": "STAFF", "token_version": 1}
ADMIN_AUTH = {"staff_id": 1, "name": "Manager", "role": "ADMIN", "token_version": 1}

WRITE_PREFIXES = ("INSERT", "UPDATE", "DELETE")


def _normalize(sql: str) -> str:
    return " ".join(sql.split())


class FakeDB:
    """Scripted query results shared by every connection a test opens."""

    def __init__(self):
        self.rules = []
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self._next_id = 100

    def on(self, fragment: str, rows, times: int = None):
        """
        Answer queries containing `fragment` with `rows`.
        rows may be a list of dicts or a callable taking the params.
        times limits how often the rule fires; the first live rule wins.
        """
        self.rules.append({"fragment": _normalize(fragment), "rows": rows, "times": times})
        return self

    def answer(self, sql: str, params):
        for rule in self.rules:
            if rule["fragment"] not in sql or rule["times"] == 0:
                continue
            if rule["times"] is not None:
                rule["times"] -= 1
            rows = rule["rows"](params) if callable(rule["rows"]) else rule["rows"]
            return [dict(row) for row in rows]
        return []

    def next_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def statements(self, fragment: str):
        fragment = _normalize(fragment)
        return [(sql, params) for sql, params in self.executed if fragment in sql]

    def audit_actions(self):
        return [params[1] for _, params in self.statements("INSERT INTO audit_log")]


class FakeCursor:
    def __init__(self, db: FakeDB):
        self.db = db
        self._rows = []
        self.lastrowid = None
        self.rowcount = 0

    def execute(self, sql, params=None):
        sql = _normalize(sql)
        self.db.executed.append((sql, params))
        self._rows = self.db.answer(sql, params)
        if sql.startswith(WRITE_PREFIXES):
            self.rowcount = len(self._rows) or 1
        else:
            self.rowcount = len(self._rows)
        if sql.startswith("INSERT"):
            self.lastrowid = self.db.next_id()

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def close(self):
        pass


class FakeConnection:
    def __init__(self, db: FakeDB):
        self.db = db

    def cursor(self, dictionary=False):
        return FakeCursor(self.db)

    def commit(self):
        self.db.commits += 1

    def rollback(self):
        self.db.rollbacks += 1

    def close(self):
        pass


def _app_modules_with(attribute: str):
    return [
        module for name, module in list(sys.modules.items())
        if name.startswith("app.") and module is not None and hasattr(module, attribute)
    ]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB()
    for module in _app_modules_with("get_db_connection"):
        monkeypatch.setattr(module, "get_db_connection", lambda serializable=False: FakeConnection(db))
    return db


@pytest.fixture
def published(monkeypatch):
    """Every (event_type, payload[, lane_id]) a handler publishes."""
    captured = []
    for module in _app_modules_with("publish"):
        if module.__name__ == "app.utils.broadcaster":
            continue
        monkeypatch.setattr(module, "publish", lambda emitted: captured.extend(emitted))
    return captured


def _client_as(auth: dict):
    app.dependency_overrides[verify_bearer_token] = lambda: auth
    return TestClient(app)


@pytest.fixture
def client():
    """Signed in as a STAFF member"""
    yield _client_as(STAFF_AUTH)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_client():
    yield _client_as(ADMIN_AUTH)
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client():
    app.dependency_overrides.clear()
    return TestClient(app)