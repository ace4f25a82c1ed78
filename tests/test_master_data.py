from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from conftest import auth_headers
from core.models import Holiday, PayPeriod, Payslip
from core.services import pay_periods, payroll_runs
from core.services.master_data import amortization_schedule

EMPLOYEE = {
    "employee_number": "EMP-0100",
    "first_name": "Jose",
    "last_name": "Rizal",
    "hire_date": "2025-06-01",
    "salary": {"base_salary": "30000.00"},
}


@pytest.fixture()
def headers(session, hr_user):
    return auth_headers(session, hr_user)


def _create_employee(client, headers, **overrides):
    r = client.post("/api/employees", json={**EMPLOYEE, **overrides}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["employee"]


# --------------------------------------------------------------------------
# Employees
# --------------------------------------------------------------------------


def test_create_and_list_employees(client, headers, department):
    created = _create_employee(client, headers, department_id=department.id, rest_days=["sunday", "SATURDAY"])
    assert created["full_name"] == "Rizal, Jose"
    assert created["department"] == "Operations"
    assert created["rest_days"] == ["SATURDAY", "SUNDAY"]
    # 30,000 * 12 / 365 and an 8-hour day
    assert created["salary"]["daily_rate"] == "986.30"
    assert created["salary"]["hourly_rate"] == "123.29"

    items = client.get("/api/employees", headers=headers).json()["items"]
    assert [e["employee_number"] for e in items] == ["EMP-0100"]
    assert client.get(f"/api/v1/employees?department_id={department.id + 1}", headers=headers).json()["items"] == []


def test_daily_rated_salary_is_its_own_daily_rate(client, headers):
    created = _create_employee(client, headers, salary={"base_salary": "650", "salary_rate_type": "DAILY"})
    assert created["salary"]["daily_rate"] == "650.00"
    assert created["salary"]["hourly_rate"] == "81.25"


def test_employee_number_and_references_are_checked(client, headers):
    _create_employee(client, headers)
    dup = client.post("/api/employees", json=EMPLOYEE, headers=headers)
    assert dup.status_code == 409
    assert dup.json()["code"] == "conflict"

    missing = client.post("/api/employees", json={**EMPLOYEE, "employee_number": "EMP-0101", "department_id": 999},
                          headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "Department not found."

    bad_day = client.post("/api/employees", json={**EMPLOYEE, "employee_number": "EMP-0102", "rest_days": ["FUNDAY"]},
                          headers=headers)
    assert bad_day.status_code == 400
    assert bad_day.json()["error"] == "Unknown rest day(s): FUNDAY."


def test_master_data_is_hr_only(client, session, employee_user):
    headers = auth_headers(session, employee_user)
    assert client.get("/api/employees", headers=headers).status_code == 403
    assert client.post("/api/holidays", json={"holiday_date": "2026-06-12", "name": "Independence Day"},
                       headers=headers).status_code == 403
    assert client.get("/api/loans").status_code == 401


# --------------------------------------------------------------------------
# Daily time records
# --------------------------------------------------------------------------


def test_time_records_upsert_by_date(client, headers, employee):
    url = f"/api/employees/{employee.id}/time-records"
    first = client.post(
        url,
        json={"records": [
            {"attendance_date": "2026-01-05", "hours_worked": "8"},
            {"attendance_date": "2026-01-06", "attendance_status": "ABSENT"},
        ]},
        headers=headers,
    )
    assert first.status_code == 200, first.text
    assert first.json()["message"] == "Saved 2 time record(s): 2 created, 0 updated."

    second = client.post(
        url,
        json={"records": [
            {"attendance_date": "2026-01-06", "hours_worked": "6", "tardiness_mins": 30, "remarks": " late "},
            {"attendance_date": "2026-01-07", "hours_worked": "8", "approval_status": "PENDING"},
        ]},
        headers=headers,
    )
    assert second.json()["message"] == "Saved 2 time record(s): 1 created, 1 updated."

    items = client.get(f"{url}?start=2026-01-06&end=2026-01-31", headers=headers).json()["items"]
    assert [(r["attendance_date"], r["attendance_status"], r["approval_status"]) for r in items] == [
        ("2026-01-06", "PRESENT", "APPROVED"),
        ("2026-01-07", "PRESENT", "PENDING"),
    ]
    assert items[0]["hours_worked"] == "6.00"
    assert items[0]["tardiness_mins"] == 30
    assert items[0]["remarks"] == "late"


def test_time_records_reject_duplicates_and_locked_periods(client, session, headers, company, employee):
    url = f"/api/employees/{employee.id}/time-records"
    dup = client.post(
        url, json={"records": [{"attendance_date": "2026-01-05"}, {"attendance_date": "2026-01-05"}]}, headers=headers
    )
    assert dup.status_code == 400
    assert dup.json()["error"] == "Each attendance date can only appear once per batch."

    session.add(
        PayPeriod(
            company_id=company.id, year=2026, period_number=1, cutoff_start=dt.date(2026, 1, 1),
            cutoff_end=dt.date(2026, 1, 15), pay_date=dt.date(2026, 1, 20), status="LOCKED",
        )
    )
    session.commit()
    locked = client.post(
        url, json={"records": [{"attendance_date": "2026-01-15"}, {"attendance_date": "2026-01-16"}]}, headers=headers
    )
    assert locked.status_code == 400
    assert locked.json()["details"] == {"dates": ["2026-01-15"]}
    assert client.get(url, headers=headers).json()["items"] == []


def test_time_records_for_another_company_are_not_found(client, headers):
    r = client.post("/api/employees/999/time-records", json={"records": [{"attendance_date": "2026-01-05"}]},
                    headers=headers)
    assert r.status_code == 404


# --------------------------------------------------------------------------
# Holidays
# --------------------------------------------------------------------------


def test_holidays_default_multiplier_and_national_rows(client, session, headers):
    session.add(Holiday(company_id=None, holiday_date=dt.date(2026, 1, 1), name="New Year's Day"))
    session.commit()

    r = client.post(
        "/api/holidays",
        json={"holiday_date": "2026-08-21", "name": "Ninoy Aquino Day", "holiday_type": "SPECIAL_NON_WORKING"},
        headers=headers,
    )
    assert r.status_code == 201, r.text
    assert r.json()["holiday"]["pay_multiplier"] == "1.30"

    again = client.post("/api/holidays", json={"holiday_date": "2026-08-21", "name": "Duplicate"}, headers=headers)
    assert again.status_code == 409

    items = client.get("/api/holidays?year=2026", headers=headers).json()["items"]
    assert [(h["name"], h["is_national"]) for h in items] == [("New Year's Day", True), ("Ninoy Aquino Day", False)]
    assert client.get("/api/holidays?year=2027", headers=headers).json()["items"] == []


# --------------------------------------------------------------------------
# Loans
# --------------------------------------------------------------------------


def test_generated_schedule_absorbs_rounding_in_last_installment():
    schedule = amortization_schedule(Decimal("1000.00"), installments=3, first_due_date=dt.date(2026, 1, 31))
    assert schedule == [
        (dt.date(2026, 1, 31), Decimal("333.33")),
        (dt.date(2026, 2, 28), Decimal("333.33")),
        (dt.date(2026, 3, 31), Decimal("333.34")),
    ]


def test_create_and_list_loans(client, headers, employee):
    r = client.post(
        "/api/loans",
        json={"employee_id": employee.id, "loan_number": "LN-1001", "principal_amount": "1000",
              "installments": 2, "first_due_date": "2026-01-15", "priority": 5},
        headers=headers,
    )
    assert r.status_code == 201, r.text
    loan = r.json()["loan"]
    assert (loan["balance"], loan["status"], loan["priority"]) == ("1000.00", "ACTIVE", 5)
    assert [(a["sequence"], a["due_date"], a["amount"]) for a in loan["amortizations"]] == [
        (1, "2026-01-15", "500.00"),
        (2, "2026-02-15", "500.00"),
    ]

    explicit = client.post(
        "/api/loans",
        json={"employee_id": employee.id, "loan_number": "LN-1002", "loan_type": "SSS", "principal_amount": "900",
              "schedule": [{"due_date": "2026-03-15", "amount": "400"}, {"due_date": "2026-02-15", "amount": "500"}]},
        headers=headers,
    )
    assert [a["due_date"] for a in explicit.json()["loan"]["amortizations"]] == ["2026-02-15", "2026-03-15"]

    items = client.get(f"/api/loans?employee_id={employee.id}&status=ACTIVE", headers=headers).json()["items"]
    assert [x["loan_number"] for x in items] == ["LN-1001", "LN-1002"]


def test_loan_schedule_must_match_principal(client, headers, employee):
    base = {"employee_id": employee.id, "loan_number": "LN-2001", "principal_amount": "1000"}
    short = client.post("/api/loans", json={**base, "schedule": [{"due_date": "2026-02-15", "amount": "900"}]},
                        headers=headers)
    assert short.status_code == 400
    assert short.json()["error"] == "Amortization schedule totals 900.00 but the principal is 1000.00."

    assert client.post("/api/loans", json=base, headers=headers).status_code == 422

    ok = {**base, "installments": 1, "first_due_date": "2026-02-15"}
    assert client.post("/api/loans", json=ok, headers=headers).status_code == 201
    assert client.post("/api/loans", json=ok, headers=headers).status_code == 409


# --------------------------------------------------------------------------
# Recurring items
# --------------------------------------------------------------------------


def test_recurring_items(client, headers, employee):
    url = f"/api/employees/{employee.id}"
    earning = client.post(
        f"{url}/recurring-earnings",
        json={"description": "Rice Allowance", "amount": "1500", "effective_from": "2026-01-01", "is_taxable": False},
        headers=headers,
    )
    assert earning.status_code == 201, earning.text
    deduction = client.post(
        f"{url}/recurring-deductions",
        json={"description": "Coop Share", "code": "coop", "effective_from": "2026-01-01", "is_percentage": True,
              "percentage_rate": "0.02", "max_deduction": "250", "applicability": "SECOND_HALF"},
        headers=headers,
    )
    assert deduction.status_code == 201, deduction.text
    assert deduction.json()["deduction"]["code"] == "COOP"

    listing = client.get(f"{url}/recurring", headers=headers).json()
    assert [(e["description"], e["is_taxable"]) for e in listing["earnings"]] == [("Rice Allowance", False)]
    assert [(d["percentage_rate"], d["max_deduction"]) for d in listing["deductions"]] == [("0.020000", "250.00")]


def test_recurring_deduction_needs_amount_or_rate(client, headers, employee):
    url = f"/api/employees/{employee.id}/recurring-deductions"
    body = {"description": "Uniform", "effective_from": "2026-01-01"}
    r = client.post(url, json=body, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Recurring deduction amount must be greater than zero."
    r = client.post(url, json={**body, "is_percentage": True}, headers=headers)
    assert r.json()["error"] == "Percentage deductions need a rate greater than zero."
    r = client.post(url, json={**body, "amount": "100", "effective_to": "2025-12-31"}, headers=headers)
    assert r.json()["error"] == "Effective end must not be before the effective start."


# --------------------------------------------------------------------------
# Inputs flow into payroll
# --------------------------------------------------------------------------


def test_api_inputs_drive_the_payroll_run(client, session, headers, hr, department, statutory_tables):
    created = _create_employee(
        client, headers, department_id=department.id,
        salary={"base_salary": "30000", "daily_rate": "1000", "hourly_rate": "125"},
    )
    emp_id = created["id"]
    weekdays = [dt.date(2026, 1, d) for d in range(1, 16) if dt.date(2026, 1, d).weekday() < 5]
    records = [{"attendance_date": d.isoformat(), "hours_worked": "8"} for d in weekdays]
    assert client.post(f"/api/employees/{emp_id}/time-records", json={"records": records},
                       headers=headers).status_code == 200
    assert client.post("/api/holidays", json={"holiday_date": "2026-01-01", "name": "New Year's Day"},
                       headers=headers).status_code == 201
    assert client.post(f"/api/employees/{emp_id}/recurring-earnings",
                       json={"description": "Rice Allowance", "amount": "1500", "effective_from": "2026-01-01",
                             "is_taxable": False},
                       headers=headers).status_code == 201
    assert client.post("/api/loans",
                       json={"employee_id": emp_id, "loan_number": "LN-9001", "principal_amount": "1000",
                             "schedule": [{"due_date": "2026-01-10", "amount": "1000"}]},
                       headers=headers).status_code == 201

    period = pay_periods.create_pay_period(
        session, hr, pay_frequency="SEMI_MONTHLY", year=2026, period_number=1,
        cutoff_start=dt.date(2026, 1, 1), cutoff_end=dt.date(2026, 1, 15), pay_date=dt.date(2026, 1, 20),
    )
    run, _ = payroll_runs.create_run(session, hr, pay_period_id=period.id)
    payroll_runs.validate_run(session, hr, run.id)
    payroll_runs.proceed_to_calculate(session, hr, run.id)
    payroll_runs.calculate_run(session, hr, run.id)

    slip = session.query(Payslip).filter(Payslip.payroll_run_id == run.id, Payslip.employee_id == emp_id).one()
    earnings = {(e.code, e.description): e.amount for e in slip.earnings}
    assert earnings[("BASIC_PAY", "Basic Pay")] == Decimal("15000.00")
    assert earnings[("HOLIDAY_PAY", "Holiday Premium")] == Decimal("1000.00")
    assert earnings[("RECURRING", "Rice Allowance")] == Decimal("1500.00")
    assert [(d.description, d.amount) for d in slip.deductions if d.code == "LOAN_PAYMENT"] == [
        ("Loan Amortization (LN-9001)", Decimal("1000.00"))
    ]

    loan = client.get(f"/api/loans?employee_id={emp_id}", headers=headers).json()["items"][0]
    assert (loan["status"], loan["balance"], loan["amortizations"][0]["is_paid"]) == ("FULLY_PAID", "0.00", True)
