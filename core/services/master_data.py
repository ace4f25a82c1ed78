"""Employees, salaries, time records, holidays, loans and recurring pay items.

These are the payroll inputs. HR maintains them here; the payroll engine
only reads them. Every row is scoped to the caller's company, except
holidays, which may also be national (``company_id`` NULL) and are then
shared by every company.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import (
    DailyTimeRecord,
    Employee,
    EmployeeSalary,
    Holiday,
    Loan,
    LoanAmortization,
    PayPeriod,
    RecurringDeduction,
    RecurringEarning,
)
from core.repositories import companies as companies_repo
from core.repositories import employees as employees_repo
from core.utils.dates import DAY_NAMES, add_months

from .audit import record_event
from .auth import Actor
from .calculation import ZERO, daily_rate_for, hourly_rate_for, round_currency, to_decimal
from .pay_periods import PERIODS_PER_YEAR

logger = logging.getLogger("hris_core.master_data")

ATTENDANCE_STATUSES = ("PRESENT", "ABSENT", "ON_LEAVE", "REST_DAY", "HOLIDAY")
HOLIDAY_MULTIPLIERS = {
    "REGULAR": Decimal("2.00"),
    "SPECIAL_NON_WORKING": Decimal("1.30"),
    "SPECIAL_WORKING": Decimal("1.30"),
}
LOAN_TYPES = ("COMPANY", "SSS", "PAGIBIG")


def _require_hr(actor: Actor) -> None:
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to employee records.")


def _employee(session: Session, actor: Actor, employee_id: int) -> Employee:
    employee = employees_repo.get_employee(session, actor.company_id, int(employee_id))
    if employee is None:
        raise NotFound("Employee not found.")
    return employee


def _commit(session: Session, message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict(message) from exc


def _audit(session: Session, actor: Actor, action: str, resource: str, **meta: Any) -> None:
    record_event(session, actor=actor.label, action=action, resource=resource, company_id=actor.company_id, meta=meta)


def _iso(value: Optional[dt.date]) -> Optional[str]:
    return value.isoformat() if value else None


# --------------------------------------------------------------------------
# Employees and salary
# --------------------------------------------------------------------------


def _rest_days(value: Optional[Iterable[str]]) -> Optional[str]:
    if value is None:
        return None
    days = [str(d).strip().upper() for d in value if str(d).strip()]
    unknown = sorted(set(days) - set(DAY_NAMES))
    if unknown:
        raise ValidationFailed(f"Unknown rest day(s): {', '.join(unknown)}.")
    return ",".join(d for d in DAY_NAMES if d in days)


def _salary(data: Mapping[str, Any]) -> EmployeeSalary:
    base = to_decimal(data.get("base_salary"))
    if base <= ZERO:
        raise ValidationFailed("Base salary must be greater than zero.")
    rate_type = str(data.get("salary_rate_type") or "MONTHLY").upper()
    if rate_type not in ("MONTHLY", "DAILY"):
        raise ValidationFailed("Salary rate type must be MONTHLY or DAILY.")
    daily = data.get("daily_rate")
    # A daily-rated salary is its own daily rate
    if rate_type == "DAILY" and not daily:
        daily = base
    return EmployeeSalary(
        base_salary=round_currency(base),
        salary_rate_type=rate_type,
        daily_rate=round_currency(daily) if daily else None,
        hourly_rate=round_currency(data["hourly_rate"]) if data.get("hourly_rate") else None,
        monthly_divisor=int(data.get("monthly_divisor") or 365),
        hours_per_day=to_decimal(data.get("hours_per_day") or "8"),
        effective_date=data.get("effective_date"),
        is_active=True,
    )


def create_employee(
    session: Session,
    actor: Actor,
    *,
    employee_number: str,
    first_name: str,
    last_name: str,
    hire_date: dt.date,
    salary: Mapping[str, Any],
    department_id: Optional[int] = None,
    supervisor_user_id: Optional[int] = None,
    pay_frequency: str = "SEMI_MONTHLY",
    rest_days: Optional[Iterable[str]] = ("SATURDAY", "SUNDAY"),
    is_overtime_eligible: bool = True,
    is_night_diff_eligible: bool = True,
    is_substituted_filing: bool = False,
    has_thirteenth_month: bool = True,
) -> Employee:
    _require_hr(actor)
    number = (employee_number or "").strip()
    if not number:
        raise ValidationFailed("Employee number is required.")
    pay_frequency = (pay_frequency or "").upper()
    if pay_frequency not in PERIODS_PER_YEAR:
        raise ValidationFailed(f"Unsupported pay frequency: {pay_frequency}.")
    if department_id is not None and companies_repo.get_department(session, actor.company_id, int(department_id)) is None:
        raise NotFound("Department not found.")
    if supervisor_user_id is not None and companies_repo.get_user(session, actor.company_id, int(supervisor_user_id)) is None:
        raise NotFound("Supervisor not found.")

    employee = Employee(
        company_id=actor.company_id,
        employee_number=number,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        hire_date=hire_date,
        department_id=department_id,
        supervisor_user_id=supervisor_user_id,
        pay_frequency=pay_frequency,
        rest_days=_rest_days(rest_days),
        is_overtime_eligible=is_overtime_eligible,
        is_night_diff_eligible=is_night_diff_eligible,
        is_substituted_filing=is_substituted_filing,
        has_thirteenth_month=has_thirteenth_month,
    )
    employee.salary = _salary(salary)
    session.add(employee)
    _commit(session, f"Employee number {number} is already in use.")
    logger.info("employee created", extra={"company_id": actor.company_id})
    _audit(session, actor, "CREATE_EMPLOYEE", f"employee:{employee.id}", employee_number=number)
    return employee


def list_employees(
    session: Session,
    actor: Actor,
    *,
    department_id: Optional[int] = None,
    include_inactive: bool = False,
) -> list[Employee]:
    _require_hr(actor)
    q = (
        session.query(Employee)
        .options(joinedload(Employee.salary), joinedload(Employee.department))
        .filter(Employee.company_id == actor.company_id)
    )
    if department_id:
        q = q.filter(Employee.department_id == int(department_id))
    if not include_inactive:
        q = q.filter(Employee.is_active.is_(True))
    return q.order_by(Employee.last_name.asc(), Employee.first_name.asc(), Employee.id.asc()).all()


def employee_to_dict(employee: Employee) -> dict[str, Any]:
    salary = employee.salary
    data: dict[str, Any] = {
        "id": employee.id,
        "employee_number": employee.employee_number,
        "full_name": employee.full_name,
        "first_name": employee.first_name,
        "last_name": employee.last_name,
        "department_id": employee.department_id,
        "department": employee.department.name if employee.department else None,
        "supervisor_user_id": employee.supervisor_user_id,
        "hire_date": _iso(employee.hire_date),
        "separation_date": _iso(employee.separation_date),
        "is_active": employee.is_active,
        "pay_frequency": employee.pay_frequency,
        "rest_days": employee.rest_days.split(",") if employee.rest_days else [],
        "is_overtime_eligible": employee.is_overtime_eligible,
        "is_night_diff_eligible": employee.is_night_diff_eligible,
        "is_substituted_filing": employee.is_substituted_filing,
        "has_thirteenth_month": employee.has_thirteenth_month,
        "salary": None,
    }
    if salary is not None:
        daily = daily_rate_for(salary.base_salary, daily_override=salary.daily_rate, monthly_divisor=salary.monthly_divisor)
        hourly = hourly_rate_for(daily, hourly_override=salary.hourly_rate, hours_per_day=salary.hours_per_day)
        data["salary"] = {
            "base_salary": str(salary.base_salary),
            "salary_rate_type": salary.salary_rate_type,
            "daily_rate": str(round_currency(daily)),
            "hourly_rate": str(round_currency(hourly)),
            "monthly_divisor": salary.monthly_divisor,
            "hours_per_day": str(salary.hours_per_day),
            "effective_date": _iso(salary.effective_date),
        }
    return data


# --------------------------------------------------------------------------
# Daily time records
# --------------------------------------------------------------------------


def _locked_dates(session: Session, company_id: int, dates: list[dt.date]) -> list[dt.date]:
    periods = (
        session.query(PayPeriod)
        .filter(
            PayPeriod.company_id == company_id,
            PayPeriod.status == "LOCKED",
            PayPeriod.cutoff_start <= max(dates),
            PayPeriod.cutoff_end >= min(dates),
        )
        .all()
    )
    return [d for d in dates if any(p.cutoff_start <= d <= p.cutoff_end for p in periods)]


def upsert_time_records(
    session: Session,
    actor: Actor,
    employee_id: int,
    records: list[Mapping[str, Any]],
) -> tuple[list[DailyTimeRecord], str]:
    """Create or replace one employee's DTR rows, one per attendance date.

    Dates inside a locked pay period are refused as a whole batch.
    """
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    if not records:
        raise ValidationFailed("At least one time record is required.")
    dates = [r["attendance_date"] for r in records]
    if len(dates) != len(set(dates)):
        raise ValidationFailed("Each attendance date can only appear once per batch.")
    for data in records:
        if str(data.get("attendance_status") or "PRESENT").upper() not in ATTENDANCE_STATUSES:
            raise ValidationFailed(f"Unsupported attendance status: {data.get('attendance_status')}.")
        time_in, time_out = data.get("time_in"), data.get("time_out")
        if time_in and time_out and time_out <= time_in:
            raise ValidationFailed("Time out must be later than time in.")
    locked =_locked_dates(session, actor.company_id, dates)
    if locked:
        raise ValidationFailed(
            "Time records fall inside a locked pay period.",
            details={"dates": [d.isoformat() for d in sorted(locked)]},
        )

    existing = {
        r.attendance_date: r
        for r in session.query(DailyTimeRecord).filter(
            DailyTimeRecord.employee_id == employee.id, DailyTimeRecord.attendance_date.in_(dates)
        )
    }
    saved: list[DailyTimeRecord] = []
    created = 0
    for data in records:
        row = existing.get(data["attendance_date"])
        if row is None:
            row = DailyTimeRecord(employee_id=employee.id, attendance_date=data["attendance_date"])
            session.add(row)
            created += 1
        row.attendance_status = str(data.get("attendance_status") or "PRESENT").upper()
        row.approval_status = str(data.get("approval_status") or "APPROVED").upper()
        row.time_in = data.get("time_in")
        row.time_out = data.get("time_out")
        row.hours_worked = to_decimal(data.get("hours_worked"))
        row.overtime_hours = to_decimal(data.get("overtime_hours"))
        row.night_diff_hours = to_decimal(data.get("night_diff_hours"))
        row.tardiness_mins = int(data.get("tardiness_mins") or 0)
        row.undertime_mins = int(data.get("undertime_mins") or 0)
        row.remarks = (data.get("remarks") or "").strip()
        saved.append(row)
    _commit(session, "Time records were changed by another request.")
    updated = len(saved) - created
    _audit(
        session, actor, "UPSERT_DTR", f"employee:{employee.id}",
        created=created, updated=updated, start=min(dates).isoformat(), end=max(dates).isoformat(),
    )
    return saved, f"Saved {len(saved)} time record(s): {created} created, {updated} updated."


def list_time_records(
    session: Session,
    actor: Actor,
    employee_id: int,
    *,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
) -> list[DailyTimeRecord]:
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    q = session.query(DailyTimeRecord).filter(DailyTimeRecord.employee_id == employee.id)
    if start:
        q = q.filter(DailyTimeRecord.attendance_date >= start)
    if end:
        q = q.filter(DailyTimeRecord.attendance_date <= end)
    return q.order_by(DailyTimeRecord.attendance_date.asc()).all()


def time_record_to_dict(row: DailyTimeRecord) -> dict[str, Any]:
    return {
        "id": row.id,
        "employee_id": row.employee_id,
        "attendance_date": row.attendance_date.isoformat(),
        "attendance_status": row.attendance_status,
        "approval_status": row.approval_status,
        "time_in": row.time_in.isoformat() if row.time_in else None,
        "time_out": row.time_out.isoformat() if row.time_out else None,
        "hours_worked": str(row.hours_worked),
        "overtime_hours": str(row.overtime_hours),
        "night_diff_hours": str(row.night_diff_hours),
        "tardiness_mins": row.tardiness_mins,
        "undertime_mins": row.undertime_mins,
        "remarks": row.remarks,
    }


# --------------------------------------------------------------------------
# Holidays
# --------------------------------------------------------------------------


def create_holiday(
    session: Session,
    actor: Actor,
    *,
    holiday_date: dt.date,
    name: str,
    holiday_type: str = "REGULAR",
    pay_multiplier: Optional[Decimal] = None,
) -> Holiday:
    _require_hr(actor)
    holiday_type = (holiday_type or "").upper()
    if holiday_type not in HOLIDAY_MULTIPLIERS:
        raise ValidationFailed(f"Unsupported holiday type: {holiday_type}.")
    clash = (
        session.query(Holiday)
        .filter(Holiday.company_id == actor.company_id, Holiday.holiday_date == holiday_date)
        .first()
    )
    if clash is not None:
        raise Conflict(f"{clash.name} is already set for {holiday_date.isoformat()}.")
    multiplier = to_decimal(pay_multiplier) if pay_multiplier is not None else HOLIDAY_MULTIPLIERS[holiday_type]
    if multiplier < 1:
        raise ValidationFailed("Holiday pay multiplier must be at least 1.")
    holiday = Holiday(
        company_id=actor.company_id,
        holiday_date=holiday_date,
        name=name.strip(),
        holiday_type=holiday_type,
        pay_multiplier=multiplier,
    )
    session.add(holiday)
    session.commit()
    _audit(session, actor, "CREATE_HOLIDAY", f"holiday:{holiday.id}", date=holiday_date.isoformat())
    return holiday


def list_holidays(session: Session, actor: Actor, *, year: Optional[int] = None) -> list[Holiday]:
    """Company holidays plus the national ones every company observes."""
    q = session.query(Holiday).filter((Holiday.company_id == actor.company_id) | Holiday.company_id.is_(None))
    if year:
        q = q.filter(Holiday.holiday_date >= dt.date(int(year), 1, 1), Holiday.holiday_date <= dt.date(int(year), 12, 31))
    return q.order_by(Holiday.holiday_date.asc(), Holiday.id.asc()).all()


def holiday_to_dict(holiday: Holiday) -> dict[str, Any]:
    return {
        "id": holiday.id,
        "holiday_date": holiday.holiday_date.isoformat(),
        "name": holiday.name,
        "holiday_type": holiday.holiday_type,
        "pay_multiplier": str(holiday.pay_multiplier),
        "is_national": holiday.company_id is None,
    }


# --------------------------------------------------------------------------
# Loans
# --------------------------------------------------------------------------


def amortization_schedule(
    principal: Decimal,
    *,
    installments: int,
    first_due_date: dt.date,
    months_between: int = 1,
) -> list[tuple[dt.date, Decimal]]:
    """Equal installments; the last one absorbs the rounding remainder."""
    if installments < 1:
        raise ValidationFailed("A loan needs at least one installment.")
    each = round_currency(principal / installments)
    schedule = [(add_months(first_due_date, i * months_between), each) for i in range(installments - 1)]
    schedule.append((add_months(first_due_date, (installments - 1) * months_between), principal - each * (installments - 1)))
    return schedule


def create_loan(
    session: Session,
    actor: Actor,
    *,
    employee_id: int,
    loan_number: str,
    principal_amount: Decimal,
    loan_type: str = "COMPANY",
    priority: int = 100,
    installments: Optional[int] = None,
    first_due_date: Optional[dt.date] = None,
    months_between: int = 1,
    schedule: Optional[list[Mapping[str, Any]]] = None,
) -> Loan:
    """Book a loan with its amortization schedule.

    The schedule is either given row by row or generated as equal monthly
    installments from ``first_due_date``. Either way it must add up to the
    principal.
    """
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    principal = round_currency(principal_amount)
    if principal <= ZERO:
        raise ValidationFailed("Loan principal must be greater than zero.")
    loan_type = (loan_type or "").upper()
    if loan_type not in LOAN_TYPES:
        raise ValidationFailed(f"Unsupported loan type: {loan_type}.")

    if schedule:
        rows = sorted((r["due_date"], round_currency(r["amount"])) for r in schedule)
    elif installments and first_due_date:
        rows = amortization_schedule(
            principal, installments=int(installments), first_due_date=first_due_date, months_between=months_between
        )
    else:
        raise ValidationFailed("Provide an amortization schedule or the number of installments and first due date.")
    if any(amount <= ZERO for _, amount in rows):
        raise ValidationFailed("Amortization amounts must be greater than zero.")
    total = sum((amount for _, amount in rows), ZERO)
    if total != principal:
        raise ValidationFailed(f"Amortization schedule totals {total} but the principal is {principal}.")

    loan = Loan(
        employee_id=employee.id,
        loan_number=loan_number.strip(),
        loan_type=loan_type,
        principal_amount=principal,
        balance=principal,
        status="ACTIVE",
        priority=int(priority),
    )
    loan.amortizations = [
        LoanAmortization(sequence=seq, due_date=due, amount=amount) for seq, (due, amount) in enumerate(rows, start=1)
    ]
    session.add(loan)
    _commit(session, f"Loan number {loan.loan_number} is already in use.")
    _audit(
        session, actor, "CREATE_LOAN", f"loan:{loan.id}",
        loan_number=loan.loan_number, employee_id=employee.id, principal=str(principal), installments=len(rows),
    )
    return loan


def list_loans(
    session: Session,
    actor: Actor,
    *,
    employee_id: Optional[int] = None,
    status: Optional[str] = None,
) -> list[Loan]:
    _require_hr(actor)
    q = (
        session.query(Loan)
        .join(Employee, Loan.employee_id == Employee.id)
        .options(joinedload(Loan.amortizations))
        .filter(Employee.company_id == actor.company_id)
    )
    if employee_id:
        q = q.filter(Loan.employee_id == int(employee_id))
    if status:
        q = q.filter(Loan.status == status.upper())
    return q.order_by(Loan.employee_id.asc(), Loan.priority.asc(), Loan.id.asc()).all()


def loan_to_dict(loan: Loan) -> dict[str, Any]:
    return {
        "id": loan.id,
        "employee_id": loan.employee_id,
        "loan_number": loan.loan_number,
        "loan_type": loan.loan_type,
        "principal_amount": str(loan.principal_amount),
        "balance": str(loan.balance),
        "status": loan.status,
        "priority": loan.priority,
        "amortizations": [
            {
                "sequence": a.sequence,
                "due_date": a.due_date.isoformat(),
                "amount": str(a.amount),
                "is_paid": a.is_paid,
            }
            for a in loan.amortizations
        ],
    }


# --------------------------------------------------------------------------
# Recurring earnings and deductions
# --------------------------------------------------------------------------


def _effective_window(effective_from: dt.date, effective_to: Optional[dt.date]) -> None:
    if effective_to is not None and effective_to < effective_from:
        raise ValidationFailed("Effective end must not be before the effective start.")


def create_recurring_earning(
    session: Session,
    actor: Actor,
    *,
    employee_id: int,
    description: str,
    amount: Decimal,
    effective_from: dt.date,
    effective_to: Optional[dt.date] = None,
    frequency: str = "PER_PAYROLL",
    proration: str = "NONE",
    is_taxable: bool = True,
) -> RecurringEarning:
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    _effective_window(effective_from, effective_to)
    if to_decimal(amount) <= ZERO:
        raise ValidationFailed("Recurring earning amount must be greater than zero.")
    item = RecurringEarning(
        employee_id=employee.id,
        description=description.strip(),
        amount=round_currency(amount),
        frequency=frequency.upper(),
        proration=proration.upper(),
        is_taxable=is_taxable,
        is_active=True,
        effective_from=effective_from,
        effective_to=effective_to,
    )
    session.add(item)
    session.commit()
    _audit(session, actor, "CREATE_RECURRING_EARNING", f"recurring_earning:{item.id}", employee_id=employee.id)
    return item


def create_recurring_deduction(
    session: Session,
    actor: Actor,
    *,
    employee_id: int,
    description: str,
    effective_from: dt.date,
    code: str = "RECURRING",
    amount: Decimal = ZERO,
    is_percentage: bool = False,
    percentage_rate: Optional[Decimal] = None,
    percentage_base: str = "BASIC",
    frequency: str = "PER_PAYROLL",
    applicability: str = "ALL",
    max_deduction: Optional[Decimal] = None,
    is_pre_tax: bool = False,
    effective_to: Optional[dt.date] = None,
) -> RecurringDeduction:
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    _effective_window(effective_from, effective_to)
    if is_percentage:
        if not percentage_rate or to_decimal(percentage_rate) <= ZERO:
            raise ValidationFailed("Percentage deductions need a rate greater than zero.")
    elif to_decimal(amount) <= ZERO:
        raise ValidationFailed("Recurring deduction amount must be greater than zero.")
    item = RecurringDeduction(
        employee_id=employee.id,
        code=(code or "RECURRING").strip().upper(),
        description=description.strip(),
        amount=round_currency(amount),
        is_percentage=is_percentage,
        percentage_rate=to_decimal(percentage_rate) if is_percentage else None,
        percentage_base=percentage_base.upper(),
        frequency=frequency.upper(),
        applicability=applicability.upper(),
        max_deduction=round_currency(max_deduction) if max_deduction is not None else None,
        is_pre_tax=is_pre_tax,
        status="ACTIVE",
        effective_from=effective_from,
        effective_to=effective_to,
    )
    session.add(item)
    session.commit()
    _audit(session, actor, "CREATE_RECURRING_DEDUCTION", f"recurring_deduction:{item.id}", employee_id=employee.id)
    return item


def list_recurring_items(
    session: Session, actor: Actor, employee_id: int
) -> tuple[list[RecurringEarning], list[RecurringDeduction]]:
    _require_hr(actor)
    employee = _employee(session, actor, employee_id)
    earnings = (
        session.query(RecurringEarning)
        .filter(RecurringEarning.employee_id == employee.id)
        .order_by(RecurringEarning.effective_from.asc(), RecurringEarning.id.asc())
        .all()
    )
    deductions = (
        session.query(RecurringDeduction)
        .filter(RecurringDeduction.employee_id == employee.id)
        .order_by(RecurringDeduction.effective_from.asc(), RecurringDeduction.id.asc())
        .all()
    )
    return earnings, deductions


def recurring_earning_to_dict(item: RecurringEarning) -> dict[str, Any]:
    return {
        "id": item.id,
        "employee_id": item.employee_id,
        "description": item.description,
        "amount": str(item.amount),
        "frequency": item.frequency,
        "proration": item.proration,
        "is_taxable": item.is_taxable,
        "is_active": item.is_active,
        "effective_from": item.effective_from.isoformat(),
        "effective_to": _iso(item.effective_to),
    }


def recurring_deduction_to_dict(item: RecurringDeduction) -> dict[str, Any]:
    return {
        "id": item.id,
        "employee_id": item.employee_id,
        "code": item.code,
        "description": item.description,
        "amount": str(item.amount),
        "is_percentage": item.is_percentage,
        "percentage_rate": str(item.percentage_rate) if item.percentage_rate is not None else None,
        "percentage_base": item.percentage_base,
        "frequency": item.frequency,
        "applicability": item.applicability,
        "max_deduction": str(item.max_deduction) if item.max_deduction is not None else None,
        "is_pre_tax": item.is_pre_tax,
        "status": item.status,
        "effective_from": item.effective_from.isoformat(),
        "effective_to": _iso(item.effective_to),
    }
