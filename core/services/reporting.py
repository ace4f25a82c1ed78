from __future__ import annotations

import csv
import io
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session, joinedload, selectinload

from core.errors import NotFound
from core.models import Employee, PayrollRun, Payslip

from .auth import Actor
from .calculation import ZERO, round_currency
from .payroll import BASIC_PAY_LABELS

STATUTORY_DEDUCTION_CODES = frozenset({"SSS", "PHILHEALTH", "PAGIBIG", "WTAX"})
BASIC_EARNING_CODES = frozenset(code for code, _ in BASIC_PAY_LABELS.values())
FIXED_AMOUNT_COLUMNS = (
    ("basic_pay", "Basic Pay"),
    ("sss", "SSS"),
    ("philhealth", "PhilHealth"),
    ("pagibig", "Pag-IBIG"),
    ("withholding_tax", "Withholding Tax"),
)
TOTAL_COLUMNS = (("gross_pay", "Gross Pay"), ("total_deductions", "Total Deductions"), ("net_pay", "Net Pay"))
NO_DEPARTMENT = "Unassigned"


def _period_label(run: PayrollRun) -> str:
    period = run.pay_period
    return f"{period.cutoff_start.isoformat()} to {period.cutoff_end.isoformat()}"


def _load_payslips(session: Session, run: PayrollRun) -> list[Payslip]:
    return (
        session.query(Payslip)
        .options(
            joinedload(Payslip.employee).joinedload(Employee.department),
            selectinload(Payslip.earnings),
            selectinload(Payslip.deductions),
        )
        .filter(Payslip.payroll_run_id == run.id)
        .all()
    )


def payroll_register(session: Session, run: PayrollRun) -> dict[str, Any]:
    """Per-employee register grouped by department with subtotals.

    Earning and deduction columns beyond the fixed statutory set are
    discovered from the line descriptions present in the run.
    """
    slips = _load_payslips(session, run)
    earning_columns: list[str] = []
    deduction_columns: list[str] = []
    for slip in slips:
        for e in slip.earnings:
            if e.code not in BASIC_EARNING_CODES and e.description not in earning_columns:
                earning_columns.append(e.description)
        for d in slip.deductions:
            if d.code not in STATUTORY_DEDUCTION_CODES and d.description not in deduction_columns:
                deduction_columns.append(d.description)
    earning_columns.sort()
    deduction_columns.sort()

    def sort_key(slip: Payslip) -> tuple[str, str, str]:
        emp = slip.employee
        dept = emp.department.name if emp.department else NO_DEPARTMENT
        return dept, emp.last_name or "", emp.first_name or ""

    groups: "OrderedDict[str, list[dict[str, Any]]]" = OrderedDict()
    period = _period_label(run)
    for slip in sorted(slips, key=sort_key):
        emp = slip.employee
        dept = emp.department.name if emp.department else NO_DEPARTMENT
        earnings: dict[str, Decimal] = {c: ZERO for c in earning_columns}
        for e in slip.earnings:
            if e.code not in BASIC_EARNING_CODES:
                earnings[e.description] += Decimal(e.amount)
        deductions: dict[str, Decimal] = {c: ZERO for c in deduction_columns}
        for d in slip.deductions:
            if d.code not in STATUTORY_DEDUCTION_CODES:
                deductions[d.description] += Decimal(d.amount)
        groups.setdefault(dept, []).append(
            {
                "payslip_id": slip.id,
                "employee_number": emp.employee_number,
                "employee_name": f"{emp.last_name}, {emp.first_name}",
                "department": dept,
                "period": period,
                "basic_pay": round_currency(slip.basic_pay),
                "sss": round_currency(slip.sss_employee),
                "philhealth": round_currency(slip.philhealth_employee),
                "pagibig": round_currency(slip.pagibig_employee),
                "withholding_tax": round_currency(slip.withholding_tax),
                "earnings": {k: round_currency(v) for k, v in earnings.items()},
                "deductions": {k: round_currency(v) for k, v in deductions.items()},
                "gross_pay": round_currency(slip.gross_pay),
                "total_deductions": round_currency(slip.total_deductions),
                "net_pay": round_currency(slip.net_pay),
            }
        )

    departments = []
    grand = _empty_totals(earning_columns, deduction_columns)
    for name, rows in groups.items():
        subtotal = _empty_totals(earning_columns, deduction_columns)
        for row in rows:
            _accumulate(subtotal, row)
            _accumulate(grand, row)
        departments.append({"department": name, "rows": rows, "subtotal": subtotal, "employees": len(rows)})
    return {
        "run_id": run.id,
        "run_number": run.run_number,
        "run_type": run.run_type,
        "period": period,
        "earning_columns": earning_columns,
        "deduction_columns": deduction_columns,
        "departments": departments,
        "grand_total": grand,
        "employees": len(slips),
    }


def _empty_totals(earning_columns: list[str], deduction_columns: list[str]) -> dict[str, Any]:
    totals: dict[str, Any] = {key: ZERO for key, _ in FIXED_AMOUNT_COLUMNS + TOTAL_COLUMNS}
    totals["earnings"] = {c: ZERO for c in earning_columns}
    totals["deductions"] = {c: ZERO for c in deduction_columns}
    return totals


def _accumulate(totals: dict[str, Any], row: dict[str, Any]) -> None:
    for key, _ in FIXED_AMOUNT_COLUMNS + TOTAL_COLUMNS:
        totals[key] += row[key]
    for bucket in ("earnings", "deductions"):
        for k, v in row[bucket].items():
            totals[bucket][k] += v


def register_header(register: dict[str, Any]) -> list[str]:
    return (
        ["Employee No.", "Employee Name", "Department", "Period"]
        + [label for _, label in FIXED_AMOUNT_COLUMNS]
        + list(register["earning_columns"])
        + list(register["deduction_columns"])
        + [label for _, label in TOTAL_COLUMNS]
    )


def register_line(register: dict[str, Any], values: dict[str, Any], lead: Optional[list[str]] = None) -> list[Any]:
    """Flatten a row or a totals dict in header order."""
    head = lead if lead is not None else [
        values["employee_number"],
        values["employee_name"],
        values["department"],
        values["period"],
    ]
    return (
        head
        + [values[key] for key, _ in FIXED_AMOUNT_COLUMNS]
        + [values["earnings"][c] for c in register["earning_columns"]]
        + [values["deductions"][c] for c in register["deduction_columns"]]
        + [values[key] for key, _ in TOTAL_COLUMNS]
    )


def register_csv(register: dict[str, Any]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(register_header(register))
    for dept in register["departments"]:
        for row in dept["rows"]:
            writer.writerow(register_line(register, row))
        writer.writerow(register_line(register, dept["subtotal"], [f"{dept['department']} Subtotal", "", "", ""]))
    writer.writerow(register_line(register, register["grand_total"], ["Grand Total", "", "", ""]))
    return buf.getvalue().encode("utf-8")


def payslip_detail(slip: Payslip) -> dict[str, Any]:
    emp = slip.employee
    run = slip.run

    def money(value: Any) -> str:
        return str(round_currency(value))

    return {
        "id": slip.id,
        "payslip_number": slip.payslip_number,
        "run_number": run.run_number,
        "run_type": run.run_type,
        "period": _period_label(run),
        "pay_date": run.pay_period.pay_date.isoformat(),
        "employee": {
            "id": emp.id,
            "employee_number": emp.employee_number,
            "name": f"{emp.first_name} {emp.last_name}",
            "department": emp.department.name if emp.department else None,
        },
        "rates": {
            "base_salary": money(slip.base_salary),
            "daily_rate": money(slip.daily_rate),
            "hourly_rate": money(slip.hourly_rate),
        },
        "attendance": {
            "days_worked": str(slip.days_worked),
            "days_absent": str(slip.days_absent),
            "overtime_hours": str(slip.overtime_hours),
            "night_diff_hours": str(slip.night_diff_hours),
        },
        "earnings": [
            {
                "id": e.id,
                "code": e.code,
                "description": e.description,
                "amount": money(e.amount),
                "hours": str(e.hours) if e.hours is not None else None,
                "is_taxable": e.is_taxable,
                "is_manual": e.is_manual,
            }
            for e in slip.earnings
        ],
        "deductions": [
            {
                "id": d.id,
                "code": d.code,
                "description": d.description,
                "amount": money(d.amount),
                "reference_type": d.reference_type,
                "is_pre_tax": d.is_pre_tax,
                "is_manual": d.is_manual,
            }
            for d in slip.deductions
        ],
        "statutory": {
            "sss": {"employee": money(slip.sss_employee), "employer": money(slip.sss_employer)},
            "philhealth": {"employee": money(slip.philhealth_employee), "employer": money(slip.philhealth_employer)},
            "pagibig": {"employee": money(slip.pagibig_employee), "employer": money(slip.pagibig_employer)},
            "withholding_tax": money(slip.withholding_tax),
        },
        "totals": {
            "basic_pay": money(slip.basic_pay),
            "gross_pay": money(slip.gross_pay),
            "taxable_income": money(slip.taxable_income),
            "total_deductions": money(slip.total_deductions),
            "net_pay": money(slip.net_pay),
        },
        "ytd": {
            "gross": money(slip.ytd_gross),
            "taxable": money(slip.ytd_taxable),
            "tax_withheld": money(slip.ytd_tax_withheld),
        },
    }


def get_payslip(session: Session, actor: Actor, payslip_id: int) -> Payslip:
    """HR sees every payslip of the company; employees only their own."""
    slip = (
        session.query(Payslip)
        .options(
            joinedload(Payslip.run).joinedload(PayrollRun.pay_period),
            joinedload(Payslip.employee).joinedload(Employee.department),
            selectinload(Payslip.earnings),
            selectinload(Payslip.deductions),
        )
        .filter(Payslip.id == int(payslip_id))
        .first()
    )
    if slip is None or slip.run.company_id != actor.company_id:
        raise NotFound("Payslip not found.")
    if not actor.is_hr and (actor.employee_id != slip.employee_id or slip.run.status != "PAID"):
        raise NotFound("Payslip not found.")
    return slip
