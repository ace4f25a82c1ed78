from __future__ import annotations

import csv
import datetime as dt
import io
from dataclasses import replace
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from conftest import fill_attendance
from core.errors import NotFound
from core.exporter import register_workbook
from core.models import Payslip
from core.services import pay_periods, payroll_runs, reporting


@pytest.fixture()
def computed_run(session, hr, employee, statutory_tables):
    period = pay_periods.create_pay_period(
        session,
        hr,
        pay_frequency="SEMI_MONTHLY",
        year=2026,
        period_number=1,
        cutoff_start=dt.date(2026, 1, 1),
        cutoff_end=dt.date(2026, 1, 15),
        pay_date=dt.date(2026, 1, 20),
    )
    fill_attendance(session, employee, period.cutoff_start, period.cutoff_end)
    run, _ = payroll_runs.create_run(session, hr, pay_period_id=period.id)
    payroll_runs.validate_run(session, hr, run.id)
    payroll_runs.proceed_to_calculate(session, hr, run.id)
    payroll_runs.calculate_run(session, hr, run.id)
    return payroll_runs.get_run(session, hr, run.id)


def _close(session, hr, run):
    payroll_runs.proceed_to_review(session, hr, run.id)
    payroll_runs.complete_review(session, hr, run.id)
    payroll_runs.generate_payslips(session, hr, run.id)
    payroll_runs.proceed_to_close(session, hr, run.id)
    payroll_runs.close_run(session, hr, run.id)


def test_register_groups_by_department(session, computed_run):
    register = reporting.payroll_register(session, computed_run)
    assert register["employees"] == 1
    assert register["earning_columns"] == []
    assert register["deduction_columns"] == []
    (dept,) = register["departments"]
    assert dept["department"] == "Operations"
    row = dept["rows"][0]
    assert row["employee_name"] == "Santos, Maria"
    assert row["period"] == "2026-01-01 to 2026-01-15"
    assert row["net_pay"] == Decimal("14050.00")
    assert register["grand_total"]["total_deductions"] == Decimal("950.00")


def test_register_picks_up_adjustment_columns(session, hr, computed_run):
    slip = session.query(Payslip).filter(Payslip.payroll_run_id == computed_run.id).one()
    payroll_runs.add_adjustment(
        session, hr, computed_run.id, slip.id, kind="DEDUCTION", description="Cash advance", amount=Decimal("1000")
    )
    register = reporting.payroll_register(session, computed_run)
    assert register["deduction_columns"] == ["Cash advance"]
    assert register["grand_total"]["deductions"]["Cash advance"] == Decimal("1000.00")
    assert register["grand_total"]["net_pay"] == Decimal("13050.00")


def test_register_csv_layout(session, computed_run):
    register = reporting.payroll_register(session, computed_run)
    rows = list(csv.reader(io.StringIO(reporting.register_csv(register).decode("utf-8"))))
    assert rows[0] == [
        "Employee No.",
        "Employee Name",
        "Department",
        "Period",
        "Basic Pay",
        "SSS",
        "PhilHealth",
        "Pag-IBIG",
        "Withholding Tax",
        "Gross Pay",
        "Total Deductions",
        "Net Pay",
    ]
    assert rows[1][:4] == ["EMP-0001", "Santos, Maria", "Operations", "2026-01-01 to 2026-01-15"]
    assert rows[1][4:] == ["15000.00", "0.00", "750.00", "200.00", "0.00", "15000.00", "950.00", "14050.00"]
    assert rows[2][0] == "Operations Subtotal"
    assert rows[3][0] == "Grand Total"
    assert rows[3][-1] == "14050.00"
    assert len(rows) == 4


def test_register_workbook(session, computed_run):
    register = reporting.payroll_register(session, computed_run)
    wb = load_workbook(register_workbook(register))
    ws = wb["Payroll Register"]
    assert ws["A1"].value == f"Payroll Register {computed_run.run_number}"
    assert ws["A3"].value == "Employee No."
    assert ws["A4"].value == "EMP-0001"
    assert ws["L4"].value == pytest.approx(14050.0)
    assert ws["L4"].number_format == "#,##0.00"
    assert ws["A6"].value == "Grand Total"
    assert ws.freeze_panes == "E4"


def test_payslip_detail_breakdown(session, hr, computed_run):
    slip = session.query(Payslip).filter(Payslip.payroll_run_id == computed_run.id).one()
    detail = reporting.payslip_detail(reporting.get_payslip(session, hr, slip.id))
    assert detail["payslip_number"].startswith("PSL-")
    assert detail["payslip_number"].endswith("-EMP-0001")
    assert detail["statutory"]["philhealth"] == {"employee": "750.00", "employer": "750.00"}
    assert detail["totals"]["net_pay"] == "14050.00"
    assert detail["pay_date"] == "2026-01-20"
    codes = {d["code"] for d in detail["deductions"]}
    assert {"PHILHEALTH", "PAGIBIG"} <= codes


def test_employee_sees_own_payslip_only_once_paid(session, hr, staff, computed_run):
    slip = session.query(Payslip).filter(Payslip.payroll_run_id == computed_run.id).one()
    with pytest.raises(NotFound):
        reporting.get_payslip(session, staff, slip.id)
    _close(session, hr, computed_run)
    assert reporting.get_payslip(session, staff, slip.id).id == slip.id


def test_payslip_of_other_company_is_hidden(session, hr, computed_run):
    slip = session.query(Payslip).filter(Payslip.payroll_run_id == computed_run.id).one()
    outsider = replace(hr, company_id=hr.company_id + 100)
    with pytest.raises(NotFound):
        reporting.get_payslip(session, outsider, slip.id)
