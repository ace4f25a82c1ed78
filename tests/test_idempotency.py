from __future__ import annotations

import datetime as dt

from conftest import USER_PASSWORD, auth_headers, fill_attendance
from core.models import DailyTimeRecord, IdempotencyRecord, PayPeriod, utc_now
from core.services import companies as company_service
from core.services.idempotency import compute_body_hash, purge_expired

PERIOD = {
    "pay_frequency": "SEMI_MONTHLY",
    "year": 2026,
    "period_number": 1,
    "cutoff_start": "2026-01-01",
    "cutoff_end": "2026-01-15",
    "pay_date": "2026-01-20",
}


def test_body_hash_ignores_key_order():
    assert compute_body_hash({"a": 1, "b": [1, 2]}) == compute_body_hash({"b": [1, 2], "a": 1})
    assert compute_body_hash({"a": 1}) != compute_body_hash({"a": 2})
    assert compute_body_hash(None) == compute_body_hash("null")


def test_replay_returns_stored_response(client, session, hr_user):
    headers = {**auth_headers(session, hr_user), "Idempotency-Key": "period-1"}
    first = client.post("/api/payroll/pay-periods", json=PERIOD, headers=headers)
    assert first.status_code == 201
    second = client.post("/api/payroll/pay-periods", json=PERIOD, headers=headers)
    assert second.status_code == 201
    assert second.json() == first.json()
    assert session.query(PayPeriod).count() == 1


def test_same_key_different_body_conflicts(client, session, hr_user):
    headers = {**auth_headers(session, hr_user), "Idempotency-Key": "period-2"}
    assert client.post("/api/payroll/pay-periods", json=PERIOD, headers=headers).status_code == 201
    r = client.post("/api/payroll/pay-periods", json={**PERIOD, "pay_date": "2026-01-21"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "idempotency_conflict"


def test_keys_are_scoped_to_path(client, session, hr_user):
    headers = {**auth_headers(session, hr_user), "Idempotency-Key": "shared"}
    assert client.post("/api/payroll/pay-periods", json=PERIOD, headers=headers).status_code == 201
    r = client.post("/api/v1/payroll/pay-periods", json={**PERIOD, "period_number": 2,
                                                         "cutoff_start": "2026-01-16", "cutoff_end": "2026-01-31",
                                                         "pay_date": "2026-02-05"}, headers=headers)
    assert r.status_code == 201
    assert session.query(IdempotencyRecord).count() == 2


def test_failures_are_not_stored(client, session, hr_user, employee, statutory_tables):
    headers = auth_headers(session, hr_user)
    period = client.post("/api/payroll/pay-periods", json=PERIOD, headers=headers).json()["pay_period"]
    fill_attendance(session, employee, dt.date(2026, 1, 1), dt.date(2026, 1, 15), approval_status="PENDING")
    run = client.post("/api/payroll/runs", json={"pay_period_id": period["id"]}, headers=headers).json()["run"]

    keyed = {**headers, "Idempotency-Key": "validate-1"}
    failed = client.post(f"/api/payroll/runs/{run['id']}/validate", headers=keyed)
    assert failed.status_code == 400
    assert failed.json()["code"] == "validation_failed"
    assert failed.json()["details"]["errors"]

    session.query(DailyTimeRecord).update({"approval_status": "APPROVED"})
    session.commit()
    ok = client.post(f"/api/payroll/runs/{run['id']}/validate", headers=keyed)
    assert ok.status_code == 200
    assert ok.json()["message"] == "Validation completed with 0 warning(s)."


def test_purge_expired(session, company):
    session.add_all(
        [
            IdempotencyRecord(key="old", method="POST", path="/x", body_hash="0" * 64,
                              created_at=utc_now() - dt.timedelta(days=10)),
            IdempotencyRecord(key="new", method="POST", path="/x", body_hash="0" * 64),
        ]
    )
    session.commit()
    assert purge_expired(session, older_than=dt.timedelta(days=7)) == 1
    assert [r.key for r in session.query(IdempotencyRecord).all()] == ["new"]


def test_keys_are_scoped_to_company(client, session, hr_user):
    other = company_service.create_company(session, "Bayani Foods Corp.", "bayani-foods")
    other_hr = company_service.create_user(
        session, other, username="hr2", password=USER_PASSWORD, role="HR_ADMIN", full_name="Other HR"
    )
    first = client.post(
        "/api/payroll/pay-periods", json=PERIOD, headers={**auth_headers(session, hr_user), "Idempotency-Key": "k-1"}
    )
    second = client.post(
        "/api/payroll/pay-periods", json=PERIOD, headers={**auth_headers(session, other_hr), "Idempotency-Key": "k-1"}
    )
    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["pay_period"]["id"] != first.json()["pay_period"]["id"]
    assert session.query(PayPeriod).count() == 2
    assert {r.company_id for r in session.query(IdempotencyRecord).all()} == {hr_user.company_id, other.id}
