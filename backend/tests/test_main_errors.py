import json

import pytest
from psycopg import errors as pg_errors
from starlette.requests import Request

from backend.app import main
from backend.tests.ledger_fakes import FakeDb


def _request(path="/cashbook/entries/e-1/allocations", request_id="rid-1"):
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("testserver", 80),
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": [(b"x-request-id", request_id.encode())],
    }
    return Request(scope)


@pytest.mark.parametrize(
    "handler,exc",
    [
        (main._lock_not_available, pg_errors.LockNotAvailable("canceling statement due to lock timeout")),
        (main._serialization_failure, pg_errors.SerializationFailure("could not serialize access")),
        (main._deadlock_detected, pg_errors.DeadlockDetected("deadlock detected")),
    ],
)
def test_lock_failures_are_retryable_conflicts(handler, exc):
    resp = handler(_request(), exc)
    body = json.loads(resp.body)
    assert resp.status_code == 409
    assert body["detail"]["code"] == "concurrency_conflict"
    assert body["retryable"] is True
    assert body["request_id"] == "rid-1"


def test_malformed_uuid_is_a_bad_request():
    resp = main._invalid_text_representation(_request(), pg_errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    assert resp.status_code == 400
    assert json.loads(resp.body)["detail"]["code"] == "invalid_value"


def test_unique_violation_is_a_conflict():
    resp = main._unique_violation(_request(), pg_errors.UniqueViolation("duplicate key"))
    body = json.loads(resp.body)
    assert resp.status_code == 409
    assert "retryable" not in body


def test_unhandled_error_keeps_request_id():
    resp = main._unhandled_exception(_request(request_id="rid-9"), RuntimeError("boom"))
    assert resp.status_code == 500
    assert json.loads(resp.body)["request_id"] == "rid-9"


def test_readiness_reports_missing_ledger_tables(monkeypatch):
    db = FakeDb([("SELECT 1 AS ok", {"ok": 1}), ("to_regclass", [{"name": "payment_allocations"}])])
    monkeypatch.setattr(main, "get_admin_conn", db.conn)
    monkeypatch.setattr(main.settings, "env", "local")
    resp = main.health_ready(_request(path="/health/ready"))
    body = json.loads(resp.body)
    assert resp.status_code == 503
    assert body["status"] == "degraded"
    assert body["error"] == "missing tables: payment_allocations"


def test_readiness_with_full_schema(monkeypatch):
    db = FakeDb([("SELECT 1 AS ok", {"ok": 1}), ("to_regclass", [])])
    monkeypatch.setattr(main, "get_admin_conn", db.conn)
    out = main.health_ready(_request(path="/health/ready"))
    assert out["status"] == "ready"
    _sql, params = db.executed[-1]
    assert "supplier_advance_allocations" in params[0]
