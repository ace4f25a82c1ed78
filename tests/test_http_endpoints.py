from __future__ import annotations

import datetime as dt
import io

from openpyxl import load_workbook

from conftest import ADMIN_PASSWORD, USER_PASSWORD, auth_headers, fill_attendance
from core.services import companies as company_service

PERIOD = {
    "pay_frequency": "SEMI_MONTHLY",
    "year": 2026,
    "period_number": 1,
    "cutoff_start": "2026-01-01",
    "cutoff_end": "2026-01-15",
    "pay_date": "2026-01-20",
}


def _login(client, username: str) -> dict:
    r = client.post(
        "/api/auth/login", json={"company_slug": "acme-ph", "username": username, "password": USER_PASSWORD}
    )
    assert r.status_code == 200, r.text
    return r.json()


# --------------------------------------------------------------------------
# Platform
# --------------------------------------------------------------------------


def test_health_and_meta(client):
    assert client.get("/api/healthz").json() == {"ok": True, "status": "healthy", "error": None}
    assert client.get("/api/v1/livez").json() == {"ok": True}
    meta = client.get("/api/meta").json()
    assert meta["ok"] is True
    assert meta["version"]


def test_root_redirects_to_docs(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"] == "/docs"


def test_security_headers_and_request_id(client):
    r = client.get("/api/livez", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert r.headers["Content-Security-Policy"] == "default-src 'self'; frame-ancestors 'none'"
    assert "Strict-Transport-Security" not in r.headers


def test_metrics_are_plain_text(client):
    client.get("/api/livez")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "hris_request_total" in r.text


def test_openapi_advertises_idempotency_key(client):
    schema = client.get("/openapi.json").json()
    assert schema["components"]["parameters"]["IdempotencyKey"]["name"] == "Idempotency-Key"
    op = schema["paths"]["/api/payroll/runs"]["post"]
    assert {"$ref": "#/components/parameters/IdempotencyKey"} in op["parameters"]


# --------------------------------------------------------------------------
# Auth and errors
# --------------------------------------------------------------------------


def test_missing_token_is_unauthorized(client):
    r = client.get("/api/auth/me", headers={"X-Request-ID": "rid-1"})
    assert r.status_code == 401
    body = r.json()
    assert body["ok"] is False
    assert body["error"] == "unauthorized"
    assert body["request_id"] == "rid-1"


def test_problem_json_errors(client):
    r = client.get("/api/auth/me", headers={"Accept": "application/problem+json"})
    assert r.status_code == 401
    assert r.headers["content-type"].startswith("application/problem+json")
    body = r.json()
    assert body["title"] == "Unauthorized"
    assert body["status"] == 401
    assert body["instance"] == "/api/auth/me"


def test_user_login_and_token_sources(client, hr_user):
    data = _login(client, "hr")
    assert data["ok"] is True
    assert data["ttl"] > 0
    assert client.cookies.get("hris_token") == data["token"]

    me = client.get("/api/auth/me").json()
    assert me["role"] == "HR_ADMIN"
    assert me["is_hr"] is True

    client.cookies.clear()
    assert client.get("/api/auth/me", headers={"X-API-Token": data["token"]}).status_code == 200
    assert client.get(f"/api/auth/me?token={data['token']}").status_code == 200
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_bad_credentials(client, hr_user):
    r = client.post("/api/auth/login", json={"company_slug": "acme-ph", "username": "hr", "password": "wrong-pass"})
    assert r.status_code == 401


def test_cookie_writes_need_same_origin(client, hr_user):
    _login(client, "hr")
    r = client.post("/api/payroll/pay-periods", json=PERIOD, headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert r.json()["error"] == "invalid origin"
    r = client.post("/api/payroll/pay-periods", json=PERIOD, headers={"Origin": "http://testserver"})
    assert r.status_code == 201


def test_admin_login_and_company_creation(client):
    assert client.post("/api/admin/login", json={"password": "wrong"}).status_code == 403
    r = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200
    token = r.json()["token"]
    client.cookies.clear()

    headers = {"Authorization": f"Bearer {token}"}
    created = client.post("/api/admin/companies", json={"name": "Beta Corp", "slug": "beta-corp"}, headers=headers)
    assert created.status_code == 200
    assert created.json()["company"]["slug"] == "beta-corp"
    assert client.get("/api/admin/companies").status_code == 403


def test_service_errors_render_codes(client, session, hr_user):
    headers = auth_headers(session, hr_user)
    r = client.get("/api/payroll/runs/999", headers=headers)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"
    r = client.post("/api/payroll/pay-periods", json={**PERIOD, "cutoff_end": "2025-12-31"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["code"] == "validation_failed"
    r = client.post("/api/payroll/pay-periods", json={**PERIOD, "year": 1900}, headers=headers)
    assert r.status_code == 422


# --------------------------------------------------------------------------
# Statutory
# --------------------------------------------------------------------------


def test_statutory_endpoints(client, session, hr_user, employee_user):
    hr = auth_headers(session, hr_user)
    assert client.get("/api/statutory/tables", headers=auth_headers(session, employee_user)).status_code == 403

    r = client.post("/api/statutory/tables/seed", json={"effective_from": "2026-01-01"}, headers=hr)
    assert r.status_code == 200
    tables = client.get("/api/statutory/tables?on_date=2026-01-15", headers=hr).json()["tables"]
    assert len(tables["sss"]) == 61
    assert tables["philhealth"] is not None

    preview = client.post(
        "/api/statutory/preview",
        json={"monthly_base": "30000", "taxable": "15000", "on_date": "2026-01-15"},
        headers=hr,
    ).json()
    assert preview["philhealth"]["employee"] == "750.00"
    assert preview["withholding_tax"] == "687.50"


# --------------------------------------------------------------------------
# Payroll over HTTP
# --------------------------------------------------------------------------


def test_payroll_run_over_http(client, session, hr_user, employee_user, employee, statutory_tables):
    hr = auth_headers(session, hr_user)
    period = client.post("/api/payroll/pay-periods", json=PERIOD, headers=hr)
    assert period.status_code == 201
    period_id = period.json()["pay_period"]["id"]
    fill_attendance(session, employee, dt.date(2026, 1, 1), dt.date(2026, 1, 15))

    created = client.post("/api/payroll/runs", json={"pay_period_id": period_id}, headers=hr)
    assert created.status_code == 201
    run = created.json()["run"]
    assert run["current_step"] == 2
    base = f"/api/payroll/runs/{run['id']}"

    for action in ("validate", "proceed-to-calculate", "calculate", "proceed-to-review"):
        r = client.post(f"{base}/{action}", headers=hr)
        assert r.status_code == 200, (action, r.text)
    assert r.json()["run"]["status"] == "FOR_REVIEW"
    assert r.json()["run"]["total_net_pay"] == "14050.00"

    register = client.get(f"{base}/register", headers=hr).json()["register"]
    payslip_id = register["departments"][0]["rows"][0]["payslip_id"]

    adj = client.post(
        f"{base}/payslips/{payslip_id}/adjustments",
        json={"kind": "EARNING", "description": "Meal allowance", "amount": "300.00", "is_taxable": False},
        headers=hr,
    )
    assert adj.status_code == 200
    assert adj.json()["message"] == "Adjustment added. New net pay is PHP 14,350.00."
    line_id = next(e["id"] for e in adj.json()["payslip"]["earnings"] if e["is_manual"])
    removed = client.delete(f"{base}/payslips/{payslip_id}/adjustments/EARNING/{line_id}", headers=hr)
    assert removed.json()["payslip"]["totals"]["net_pay"] == "14050.00"

    csv_resp = client.get(f"{base}/register?format=csv", headers=hr)
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in csv_resp.headers["content-disposition"]
    assert csv_resp.text.startswith("Employee No.,Employee Name,Department,Period,")
    assert "Grand Total" in csv_resp.text

    xlsx = client.get(f"{base}/register?format=xlsx", headers=hr)
    ws = load_workbook(io.BytesIO(xlsx.content))["Payroll Register"]
    assert ws["A3"].value == "Employee No."

    staff = auth_headers(session, employee_user)
    assert client.get(f"/api/payroll/payslips/{payslip_id}", headers=staff).status_code == 404
    assert client.get("/api/payroll/runs", headers=staff).status_code == 403

    for action in ("complete-review", "generate-payslips", "proceed-to-close", "close"):
        r = client.post(f"{base}/{action}", headers=hr)
        assert r.status_code == 200, (action, r.text)
    assert r.json()["message"] == "Payroll run closed successfully."
    assert r.json()["run"]["pay_period"]["status"] == "LOCKED"

    slip = client.get(f"/api/payroll/payslips/{payslip_id}", headers=staff)
    assert slip.status_code == 200
    assert slip.json()["payslip"]["totals"]["net_pay"] == "14050.00"

    listing = client.get("/api/payroll/runs?limit=1", headers=hr).json()
    assert listing["has_more"] is False
    assert listing["items"][0]["status"] == "PAID"


# --------------------------------------------------------------------------
# Material requests, leave and overtime over HTTP
# --------------------------------------------------------------------------


def test_material_request_over_http(client, session, company, hr_user, supervisor_user, employee_user, department):
    buyer = company_service.create_user(
        session, company, username="buyer", password=USER_PASSWORD, is_material_request_purchaser=True
    )
    hr = auth_headers(session, hr_user)
    staff = auth_headers(session, employee_user)
    boss = auth_headers(session, supervisor_user)

    flow = client.put(
        "/api/material-requests/approval-flows",
        json={
            "department_id": department.id,
            "required_steps": 1,
            "steps": [{"step_number": 1, "approver_user_ids": [supervisor_user.id]}],
        },
        headers=hr,
    )
    assert flow.status_code == 200

    draft = client.post(
        "/api/material-requests",
        json={"department_id": department.id, "items": [{"description": "Safety gloves", "uom": "pair", "quantity": "5"}]},
        headers=staff,
    )
    assert draft.status_code == 201
    req = draft.json()["request"]
    base = f"/api/material-requests/{req['id']}"

    missing = client.post(f"{base}/submit", json={"approver_selections": []}, headers=staff)
    assert missing.status_code == 400
    submitted = client.post(
        f"{base}/submit",
        json={"approver_selections": [{"step_number": 1, "approver_user_id": supervisor_user.id}]},
        headers=staff,
    )
    assert submitted.status_code == 200
    queue = client.get("/api/material-requests?scope=approvals", headers=boss).json()
    assert [i["id"] for i in queue["items"]] == [req["id"]]

    approved = client.post(f"{base}/approve", json={}, headers=boss)
    assert approved.json()["request"]["processing_status"] == "PENDING_PURCHASER"

    buyer_headers = auth_headers(session, buyer)
    item_id = req["items"][0]["id"]
    invalid = client.post(f"{base}/processing", json={"status": "IN_PROGRESS", "items": []}, headers=buyer_headers)
    assert invalid.status_code == 422
    served = client.post(
        f"{base}/processing",
        json={
            "status": "IN_PROGRESS",
            "po_number": "PO-9",
            "supplier_name": "Hardware Depot",
            "items": [{"item_id": item_id, "quantity": "5"}],
        },
        headers=buyer_headers,
    )
    assert served.status_code == 200
    assert served.json()["processing_status"] == "IN_PROGRESS"
    done = client.post(f"{base}/processing", json={"status": "COMPLETED"}, headers=buyer_headers).json()
    assert done["message"].endswith("marked as completed.")

    posted = client.post(f"{base}/post", json={"posting_reference": "GL-1"}, headers=hr).json()
    assert posted["already_posted"] is False
    detail = client.get(base, headers=staff).json()["request"]
    assert detail["posting_status"] == "POSTED"
    assert detail["items"][0]["remaining_quantity"] == "0.0000"


def test_leave_and_overtime_over_http(client, session, hr_user, supervisor_user, employee_user, leave_types):
    hr = auth_headers(session, hr_user)
    staff = auth_headers(session, employee_user)
    boss = auth_headers(session, supervisor_user)

    init = client.post("/api/leave/balances/initialize", json={"year": 2026, "credits": {"VL": "15"}}, headers=hr)
    assert init.json()["balances_created"] == 1

    types = client.get("/api/leave/types", headers=staff).json()["items"]
    vl = next(t for t in types if t["code"] == "VL")
    filed = client.post(
        "/api/leave/requests",
        json={"leave_type_id": vl["id"], "start_date": "2026-04-06", "end_date": "2026-04-07", "reason": "Family"},
        headers=staff,
    )
    assert filed.status_code == 201
    leave_id = filed.json()["request"]["id"]

    balances = client.get("/api/leave/balances?year=2026", headers=staff).json()["items"]
    assert balances[0]["pending"] == "2.0000"

    r = client.post(f"/api/leave/requests/{leave_id}/supervisor-decision", json={"decision": "APPROVE"}, headers=boss)
    assert r.json()["message"] == "Leave request approved."
    r = client.post(f"/api/leave/requests/{leave_id}/hr-decision", json={"decision": "APPROVE"}, headers=hr)
    assert r.json()["request"]["status"] == "APPROVED"
    assert client.post(
        f"/api/leave/requests/{leave_id}/hr-decision", json={"decision": "APPROVE"}, headers=staff
    ).status_code == 403

    ot = client.post(
        "/api/overtime/requests",
        json={"overtime_date": "2026-04-08", "start_time": "18:00", "end_time": "20:30"},
        headers=staff,
    )
    assert ot.status_code == 201
    assert ot.json()["request"]["hours"] == "2.50"
    short = client.post(
        "/api/overtime/requests",
        json={"overtime_date": "2026-04-08", "start_time": "18:00", "end_time": "18:30"},
        headers=staff,
    )
    assert short.status_code == 400
    assert short.json()["error"] == "Overtime requests must be at least 1 hour."
    queue = client.get("/api/overtime/requests?scope=supervisor", headers=boss).json()["items"]
    assert [q["id"] for q in queue] == [ot.json()["request"]["id"]]
