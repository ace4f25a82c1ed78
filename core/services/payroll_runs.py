"""Payroll run lifecycle.

A run walks six fixed steps: create, validate, calculate, review/adjust,
generate payslips, close. Each public function checks the step
preconditions, applies the transition, commits, audits, and returns a
short message for the caller. Precondition failures raise ``ServiceError``
subclasses and leave the run untouched.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session, selectinload

from core import metrics
from core.errors import Conflict, NotFound, PermissionDenied, ServiceError, ValidationFailed
from core.models import (
    DailyTimeRecord,
    Holiday,
    LeaveRequest,
    OvertimeRequest,
    PayPeriod,
    PayrollProcessStep,
    PayrollRun,
    Payslip,
    PayslipDeduction,
    PayslipEarning,
    utc_now,
)
from core.repositories import employees as employees_repo
from core.settings import get_settings
from core.utils.cursor import keyset_cursor, parse_keyset_cursor
from core.utils.dates import date_range, day_name

from . import statutory
from .audit import record_event
from .auth import Actor
from .calculation import ZERO, parse_rest_days, round_currency, to_decimal
from .payroll import RunFilters, compute_run_payslips, recompute_payslip_totals, recompute_run_totals
from .policy import get_policy

logger = logging.getLogger("hris_core.payroll_runs")

STEP_NAMES = {
    1: "CREATE_RUN",
    2: "VALIDATE_DATA",
    3: "CALCULATE_PAYROLL",
    4: "REVIEW_ADJUST",
    5: "GENERATE_PAYSLIPS",
    6: "CLOSE_RUN",
}
RUN_TYPES = ("REGULAR", "THIRTEENTH_MONTH", "MID_YEAR_BONUS")
ACTIVE_STATUSES = ("DRAFT", "VALIDATING", "PROCESSING", "COMPUTED", "FOR_REVIEW", "APPROVED", "FOR_PAYMENT")
ADJUSTABLE_STATUSES = ("COMPUTED", "FOR_REVIEW")
CLOSABLE_STATUSES = ("FOR_PAYMENT", "APPROVED")
REOPENABLE_STATUSES = ("PAID", "APPROVED", "FOR_PAYMENT")
UNRESOLVED_REQUEST_STATUSES = ("PENDING", "SUPERVISOR_APPROVED")


def _require_hr(actor: Actor) -> None:
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to payroll operations.")


def _load_run(session: Session, actor: Actor, run_id: int) -> PayrollRun:
    _require_hr(actor)
    run = (
        session.query(PayrollRun)
        .options(selectinload(PayrollRun.steps), selectinload(PayrollRun.pay_period))
        .filter(PayrollRun.id == int(run_id), PayrollRun.company_id == actor.company_id)
        .first()
    )
    if run is None:
        raise NotFound("Payroll run not found.")
    return run


def _set_step(
    step: PayrollProcessStep,
    status: str,
    *,
    actor: Optional[Actor] = None,
    notes: Optional[dict[str, Any]] = None,
) -> None:
    if step.status != status:
        metrics.record_payroll_step(step.step_name, status)
    step.status = status
    step.is_completed = status == "COMPLETED"
    step.completed_at = utc_now() if status == "COMPLETED" else None
    step.completed_by = actor.user_id if (actor and status == "COMPLETED") else None
    if notes is not None:
        step.notes_json = json.dumps(notes, ensure_ascii=False, default=str)


def _audit(session: Session, actor: Actor, run: PayrollRun, action: str, **meta: Any) -> None:
    record_event(
        session,
        actor=actor.label,
        action=action,
        resource=f"payroll_run:{run.id}",
        company_id=run.company_id,
        meta={"run_number": run.run_number, **meta},
    )


def _active_run_for_period(session: Session, period_id: int, *, exclude_id: Optional[int] = None) -> Optional[PayrollRun]:
    q = session.query(PayrollRun).filter(
        PayrollRun.pay_period_id == period_id, PayrollRun.status.in_(ACTIVE_STATUSES)
    )
    if exclude_id is not None:
        q = q.filter(PayrollRun.id != exclude_id)
    return q.order_by(PayrollRun.id.asc()).first()


def next_run_number(session: Session, company_id: int, *, now: Optional[dt.datetime] = None) -> str:
    """``RUN-{year}-{seq:05d}``, sequenced per company and local payroll year."""
    tz = ZoneInfo(get_settings().payroll_timezone)
    year = (now or dt.datetime.now(tz)).astimezone(tz).year
    prefix = f"RUN-{year}-"
    numbers = (
        session.query(PayrollRun.run_number)
        .filter(PayrollRun.company_id == company_id, PayrollRun.run_number.like(f"{prefix}%"))
        .all()
    )
    seq = 0
    for (number,) in numbers:
        try:
            seq = max(seq, int(number[len(prefix):]))
        except ValueError:
            continue
    return f"{prefix}{seq + 1:05d}"


# --------------------------------------------------------------------------
# Step 1: create
# --------------------------------------------------------------------------


def create_run(
    session: Session,
    actor: Actor,
    *,
    pay_period_id: int,
    run_type: str = "REGULAR",
    department_ids: Iterable[int] = (),
    employee_ids: Iterable[int] = (),
) -> tuple[PayrollRun, str]:
    _require_hr(actor)
    if run_type not in RUN_TYPES:
        raise ValidationFailed(f"Unsupported run type: {run_type}.")
    period = session.get(PayPeriod, int(pay_period_id))
    if period is None or period.company_id != actor.company_id:
        raise NotFound("Pay period not found for active company.")
    if period.status != "OPEN":
        raise ValidationFailed("Selected pay period is not open.")
    existing = _active_run_for_period(session, period.id)
    if existing is not None:
        raise Conflict(f"A payroll run is already in progress for this period ({existing.run_number}).")

    filters = RunFilters(
        department_ids=tuple(int(d) for d in department_ids),
        employee_ids=tuple(int(e) for e in employee_ids),
    )
    employees = employees_repo.eligible_employees(
        session,
        period,
        department_ids=filters.department_ids,
        employee_ids=filters.employee_ids,
        include_separated_in_year=run_type == "THIRTEENTH_MONTH",
    )
    if not employees:
        raise ValidationFailed("No eligible employees matched this payroll run scope.")

    run = PayrollRun(
        company_id=actor.company_id,
        pay_period_id=period.id,
        run_number=next_run_number(session, actor.company_id),
        run_type=run_type,
        status="DRAFT",
        current_step=2,
        total_employees=len(employees),
        filters_json=filters.to_json(),
        created_by=actor.user_id,
    )
    for number, name in STEP_NAMES.items():
        step = PayrollProcessStep(step_number=number, step_name=name)
        if number == 1:
            _set_step(step, "COMPLETED", actor=actor, notes={"filters": json.loads(filters.to_json())})
        elif number == 2:
            _set_step(step, "IN_PROGRESS", notes={})
        else:
            _set_step(step, "PENDING", notes={})
        run.steps.append(step)
    session.add(run)
    session.commit()
    logger.info("payroll run created", extra={"run_id": run.id, "company_id": run.company_id})
    _audit(session, actor, run, "CREATE_PAYROLL_RUN", run_type=run_type, employees=len(employees))
    return run, f"Payroll run {run.run_number} created."


# --------------------------------------------------------------------------
# Step 2: validate
# --------------------------------------------------------------------------


def collect_validation(session: Session, run: PayrollRun) -> tuple[list[str], list[str], dict[str, Any]]:
    """Pre-payroll checks; returns (errors, warnings, report)."""
    period = run.pay_period
    errors: list[str] = []
    warnings: list[str] = []

    if period.status != "OPEN":
        errors.append("Pay period is locked or not open.")
    concurrent = _active_run_for_period(session, period.id, exclude_id=run.id)
    if concurrent is not None:
        errors.append(f"Concurrent payroll run detected for this period: {concurrent.run_number} ({concurrent.status}).")
    try:
        step1_done = run.step(1).is_completed
    except KeyError:
        step1_done = False
    if not step1_done:
        errors.append("Previous payroll steps are incomplete.")
    if run.status not in ("DRAFT", "VALIDATING"):
        warnings.append(f"Run status is currently {run.status}. Re-validation may overwrite prior notes.")

    filters = RunFilters.from_json(run.filters_json)
    employees = employees_repo.eligible_employees(
        session,
        period,
        department_ids=filters.department_ids,
        employee_ids=filters.employee_ids,
        include_separated_in_year=run.run_type == "THIRTEENTH_MONTH",
    )
    if not employees:
        errors.append("No eligible employees found for this payroll scope.")
    emp_ids = [e.id for e in employees]

    dtrs = []
    leaves = []
    if emp_ids:
        dtrs = (
            session.query(DailyTimeRecord)
            .filter(
                DailyTimeRecord.employee_id.in_(emp_ids),
                DailyTimeRecord.attendance_date.between(period.cutoff_start, period.cutoff_end),
            )
            .all()
        )
        leaves = (
            session.query(LeaveRequest)
            .filter(
                LeaveRequest.employee_id.in_(emp_ids),
                LeaveRequest.start_date <= period.cutoff_end,
                LeaveRequest.end_date >= period.cutoff_start,
            )
            .all()
        )

    holidays = holiday_dates(session, period)
    dtr_by_emp: dict[int, dict[dt.date, DailyTimeRecord]] = {}
    for rec in dtrs:
        dtr_by_emp.setdefault(rec.employee_id, {})[rec.attendance_date] = rec
    approved_leaves: dict[int, list[LeaveRequest]] = {}
    for leave in leaves:
        if leave.status == "APPROVED":
            approved_leaves.setdefault(leave.employee_id, []).append(leave)

    dates = list(date_range(period.cutoff_start, period.cutoff_end))
    missing_total = 0
    incomplete_total = 0
    for emp in employees:
        salary = emp.salary
        if salary is None or not salary.is_active:
            errors.append(f"Employee {emp.full_name} has no active salary record.")
        if emp.rest_days is None:
            warnings.append(f"Employee {emp.full_name} has no assigned work schedule.")
        rest = set(parse_rest_days(emp.rest_days))
        records = dtr_by_emp.get(emp.id, {})
        missing = 0
        for day in dates:
            if day in holidays or day_name(day) in rest or day in records:
                continue
            if any(lv.start_date <= day <= lv.end_date for lv in approved_leaves.get(emp.id, [])):
                continue
            missing += 1
        incomplete = sum(1 for rec in records.values() if (rec.time_in is None) != (rec.time_out is None))
        if missing:
            warnings.append(f"Employee {emp.full_name} has {missing} missing DTR day(s).")
        if incomplete:
            warnings.append(f"Employee {emp.full_name} has {incomplete} incomplete DTR day(s).")
        missing_total += missing
        incomplete_total += incomplete

    unapproved = [rec for rec in dtrs if rec.approval_status in ("PENDING", "REJECTED")]
    if unapproved:
        noun = "entry is" if len(unapproved) == 1 else "entries are"
        errors.append(
            f"{len(unapproved)} DTR {noun} pending/rejected. Approve all DTR records before payroll validation."
        )

    unresolved_leaves = [lv for lv in leaves if lv.status in UNRESOLVED_REQUEST_STATUSES]
    if unresolved_leaves:
        warnings.append(f"{len(unresolved_leaves)} unresolved leave request(s) overlap the payroll period.")

    overtime = []
    if emp_ids:
        overtime = (
            session.query(OvertimeRequest)
            .filter(
                OvertimeRequest.employee_id.in_(emp_ids),
                OvertimeRequest.overtime_date.between(period.cutoff_start, period.cutoff_end),
            )
            .all()
        )
    pending_ot = [ot for ot in overtime if ot.status in UNRESOLVED_REQUEST_STATUSES]
    if pending_ot:
        warnings.append(f"{len(pending_ot)} pending overtime request(s) overlap the payroll period.")
    approved_ot = {(ot.employee_id, ot.overtime_date) for ot in overtime if ot.status == "APPROVED"}
    unmatched_ot = [
        rec
        for rec in dtrs
        if to_decimal(rec.overtime_hours) > 0 and (rec.employee_id, rec.attendance_date) not in approved_ot
    ]
    if unmatched_ot:
        noun = "entry has" if len(unmatched_ot) == 1 else "entries have"
        warnings.append(f"{len(unmatched_ot)} DTR overtime {noun} no approved overtime request.")

    policy = get_policy(session, run.company_id, period.year)
    schedule = policy.get("statutory_schedule") or {}
    tables = statutory.active_tables(session, period.cutoff_end)
    warnings.extend(statutory.missing_table_warnings(tables, schedule, period.pay_frequency, period.period_half))

    report = {
        "employee_count": len(employees),
        "dtr_summary": {
            "records": len(dtrs),
            "pending_or_rejected": len(unapproved),
            "missing_days": missing_total,
            "incomplete_days": incomplete_total,
        },
        "statutory": {
            "schedule": schedule,
            "applicable": {
                name: statutory.should_apply(schedule.get(name), period.pay_frequency, period.period_half)
                for name in ("sss", "philhealth", "pagibig", "withholding_tax")
            },
        },
    }
    return errors, warnings, report


def holiday_dates(session: Session, period: PayPeriod) -> set[dt.date]:
    rows = (
        session.query(Holiday.holiday_date)
        .filter(
            Holiday.holiday_date.between(period.cutoff_start, period.cutoff_end),
            or_(Holiday.company_id == period.company_id, Holiday.company_id.is_(None)),
        )
        .all()
    )
    return {row[0] for row in rows}


def validate_run(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    errors, warnings, report = collect_validation(session, run)

    run.status = "DRAFT" if errors else "VALIDATING"
    run.current_step = 2
    run.total_employees = int(report["employee_count"])
    step2 = run.step(2)
    _set_step(
        step2,
        "FAILED" if errors else "COMPLETED",
        actor=actor,
        notes={
            "validated_at": utc_now().isoformat(),
            "error_count": len(errors),
            "warning_count": len(warnings),
            **report,
        },
    )
    step2.validation_errors_json = json.dumps(errors, ensure_ascii=False)
    step2.validation_warnings_json = json.dumps(warnings, ensure_ascii=False)
    if errors:
        _set_step(run.step(3), "PENDING")
    session.commit()
    _audit(session, actor, run, "VALIDATE_PAYROLL_RUN", errors=len(errors), warnings=len(warnings))

    if errors:
        raise ValidationFailed(
            f"Validation failed ({len(errors)}): {errors[0]}",
            details={"errors": errors, "warnings": warnings},
        )
    return f"Validation completed with {len(warnings)} warning(s)."


def proceed_to_calculate(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    step2 = run.step(2)
    if not step2.is_completed:
        raise ValidationFailed("Validate step must be completed first.")
    if json.loads(step2.validation_errors_json or "[]"):
        raise ValidationFailed("Validation errors still exist. Resolve them before proceeding.")
    if run.current_step > 2:
        raise ValidationFailed("Run is already beyond validation step.")

    run.status = "VALIDATING"
    run.current_step = 3
    _set_step(run.step(3), "IN_PROGRESS")
    session.commit()
    _audit(session, actor, run, "PROCEED_TO_CALCULATE_PAYROLL")
    return "Validation reviewed. Proceeded to calculation step."


# --------------------------------------------------------------------------
# Step 3: calculate
# --------------------------------------------------------------------------


def calculate_run(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if not run.step(2).is_completed:
        raise ValidationFailed("Payroll run must pass validation before calculation.")
    if run.status in ("PAID", "FOR_PAYMENT", "APPROVED", "CANCELLED"):
        raise ValidationFailed(f"Payroll run cannot be recalculated while {run.status}.")

    run.status = "PROCESSING"
    run.current_step = 3
    try:
        notes = compute_run_payslips(session, run)
        run.status = "COMPUTED"
        run.computed_at = utc_now()
        _set_step(run.step(3), "COMPLETED", actor=actor, notes=notes)
        _set_step(run.step(4), "PENDING")
        session.commit()
    except ServiceError as exc:
        _mark_calculation_failed(session, run.id, exc.message)
        raise ValidationFailed(f"Failed to calculate payroll run: {exc.message}") from exc
    except Exception as exc:
        logger.exception("payroll calculation crashed", extra={"run_id": run.id})
        _mark_calculation_failed(session, run.id, str(exc))
        raise

    logger.info("payroll run computed", extra={"run_id": run.id, "company_id": run.company_id})
    _audit(
        session,
        actor,
        run,
        "CALCULATE_PAYROLL_RUN",
        processed=run.total_employees,
        gross=str(run.total_gross_pay),
        deductions=str(run.total_deductions),
        net=str(run.total_net_pay),
    )
    return "Payroll calculation completed."


def _mark_calculation_failed(session: Session, run_id: int, message: str) -> None:
    session.rollback()
    run = session.get(PayrollRun, run_id)
    if run is None:
        return
    metrics.record_calculation_failure(run.run_type)
    run.status = "VALIDATING"
    run.current_step = 3
    _set_step(run.step(3), "FAILED", notes={"error": message})
    session.commit()


# --------------------------------------------------------------------------
# Step 4: review and adjust
# --------------------------------------------------------------------------


def proceed_to_review(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if not run.step(3).is_completed:
        raise ValidationFailed("Calculation step must be completed before proceeding.")
    if run.current_step > 3 or run.status == "PAID":
        raise ValidationFailed("Run is already beyond calculation step.")

    run.status = "FOR_REVIEW"
    run.current_step = 4
    _set_step(run.step(4), "IN_PROGRESS")
    session.commit()
    _audit(session, actor, run, "PROCEED_TO_REVIEW_PAYROLL")
    return "Calculation reviewed. Proceeded to review/adjust step."


def _adjustable_payslip(session: Session, actor: Actor, run_id: int, payslip_id: int) -> tuple[PayrollRun, Payslip]:
    run = _load_run(session, actor, run_id)
    if run.status not in ADJUSTABLE_STATUSES:
        raise ValidationFailed(f"Adjustments are not allowed for {run.status} runs.")
    slip = session.get(Payslip, int(payslip_id))
    if slip is None or slip.payroll_run_id != run.id:
        raise NotFound("Payslip not found.")
    return run, slip


def add_adjustment(
    session: Session,
    actor: Actor,
    run_id: int,
    payslip_id: int,
    *,
    kind: str,
    description: str,
    amount: Decimal,
    is_taxable: bool = True,
) -> tuple[Payslip, str]:
    """Add a manual earning or deduction line to a computed payslip."""
    run, slip = _adjustable_payslip(session, actor, run_id, payslip_id)
    value = round_currency(amount)
    if value <= 0:
        raise ValidationFailed("Adjustment amount must be greater than zero.")
    description = (description or "").strip()
    if not description:
        raise ValidationFailed("Adjustment description is required.")
    kind = (kind or "").upper()
    if kind == "EARNING":
        slip.earnings.append(
            PayslipEarning(
                code="ADJUSTMENT", description=description, amount=value, is_taxable=bool(is_taxable), is_manual=True
            )
        )
    elif kind == "DEDUCTION":
        slip.deductions.append(
            PayslipDeduction(
                code="ADJUSTMENT", description=description, amount=value, reference_type="ADJUSTMENT", is_manual=True
            )
        )
    else:
        raise ValidationFailed("Adjustment type must be EARNING or DEDUCTION.")

    recompute_payslip_totals(slip)
    recompute_run_totals(run)
    session.commit()
    _audit(
        session,
        actor,
        run,
        "ADD_PAYROLL_ADJUSTMENT",
        payslip_id=slip.id,
        kind=kind,
        amount=str(value),
    )
    return slip, f"Adjustment added. New net pay is PHP {slip.net_pay:,.2f}."


def remove_adjustment(
    session: Session, actor: Actor, run_id: int, payslip_id: int, *, kind: str, line_id: int
) -> tuple[Payslip, str]:
    run, slip = _adjustable_payslip(session, actor, run_id, payslip_id)
    lines = slip.earnings if (kind or "").upper() == "EARNING" else slip.deductions
    line = next((ln for ln in lines if ln.id == int(line_id)), None)
    if line is None or not line.is_manual:
        raise NotFound("Adjustment line not found.")
    lines.remove(line)
    recompute_payslip_totals(slip)
    recompute_run_totals(run)
    session.commit()
    _audit(session, actor, run, "REMOVE_PAYROLL_ADJUSTMENT", payslip_id=slip.id, line_id=int(line_id))
    return slip, "Adjustment removed."


def complete_review(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if not run.step(3).is_completed:
        raise ValidationFailed("Payroll must be calculated before review completion.")
    if run.current_step > 4 or run.status == "PAID":
        raise ValidationFailed("Review step is no longer editable for this run.")

    run.status = "FOR_REVIEW"
    run.current_step = 5
    _set_step(run.step(4), "COMPLETED", actor=actor)
    _set_step(run.step(5), "IN_PROGRESS")
    session.commit()
    _audit(session, actor, run, "COMPLETE_PAYROLL_REVIEW")
    return "Payroll review completed. Ready to generate payslips."


# --------------------------------------------------------------------------
# Steps 5 and 6
# --------------------------------------------------------------------------


def generate_payslips(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if not run.step(4).is_completed:
        raise ValidationFailed("Review and adjustment step must be completed first.")
    if run.current_step > 5 or run.status == "PAID":
        raise ValidationFailed("Payslip generation is no longer available for this run.")
    count = session.query(Payslip).filter(Payslip.payroll_run_id == run.id).count()
    if count == 0:
        raise ValidationFailed("No payslips found. Run calculation first.")

    now = utc_now()
    run.generated_at = now
    if run.approved_at is None:
        run.approved_at = now
        run.approved_by = actor.user_id
    _set_step(run.step(5), "COMPLETED", actor=actor, notes={"payslip_count": count})
    session.commit()
    _audit(session, actor, run, "GENERATE_PAYSLIPS", payslip_count=count)
    return "Payslips generated. Review and proceed when ready."


def proceed_to_close(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if not run.step(5).is_completed:
        raise ValidationFailed("Generate payslips step must be completed before proceeding.")
    if run.current_step > 5 or run.status == "PAID":
        raise ValidationFailed("Run is already beyond payslip generation.")

    run.status = "FOR_PAYMENT"
    run.current_step = 6
    if run.approved_at is None:
        run.approved_at = utc_now()
        run.approved_by = actor.user_id
    _set_step(run.step(6), "IN_PROGRESS")
    session.commit()
    _audit(session, actor, run, "PROCEED_TO_CLOSE_PAYROLL")
    return "Proceeded to close period step."


def close_run(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if run.status == "PAID":
        return "Payroll run is already closed and locked."
    if run.status not in CLOSABLE_STATUSES:
        raise ValidationFailed("Payroll run is not in a closable state.")
    if not run.step(5).is_completed:
        raise ValidationFailed("Generate payslips step must be completed before closing run.")

    now = utc_now()
    previous_status = run.status
    result = session.execute(
        update(PayrollRun)
        .where(and_(PayrollRun.id == run.id, PayrollRun.status.in_(CLOSABLE_STATUSES)))
        .values(
            status="PAID",
            current_step=6,
            paid_at=now,
            paid_by=actor.user_id,
            approved_at=run.approved_at or now,
            approved_by=run.approved_by or actor.user_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.rollback()
        raise Conflict("Payroll run was already closed by another request.")

    session.refresh(run)
    for number in (4, 5):
        step = run.step(number)
        if not step.is_completed:
            _set_step(step, "COMPLETED", actor=actor)
    _set_step(run.step(6), "COMPLETED", actor=actor)
    if run.run_type == "REGULAR":
        period = run.pay_period
        period.status = "LOCKED"
        period.locked_at = now
        period.locked_by = actor.user_id
    session.commit()
    logger.info("payroll run closed", extra={"run_id": run.id, "company_id": run.company_id})
    _audit(session, actor, run, "CLOSE_PAYROLL_RUN", previous_status=previous_status)
    return "Payroll run closed successfully."


def reopen_run(session: Session, actor: Actor, run_id: int) -> str:
    run = _load_run(session, actor, run_id)
    if run.status not in REOPENABLE_STATUSES:
        raise ValidationFailed("Only approved/paid payroll runs can be reopened.")

    previous_status = run.status
    run.status = "FOR_REVIEW"
    run.current_step = 4
    run.paid_at = None
    run.paid_by = None
    _set_step(run.step(4), "IN_PROGRESS")
    _set_step(run.step(5), "PENDING")
    _set_step(run.step(6), "PENDING")
    if run.run_type == "REGULAR":
        period = run.pay_period
        period.status = "OPEN"
        period.locked_at = None
        period.locked_by = None
    session.commit()
    _audit(session, actor, run, "REOPEN_PAYROLL_RUN", previous_status=previous_status)
    return "Payroll run reopened for review."


# --------------------------------------------------------------------------
# Queries
# --------------------------------------------------------------------------


def get_run(session: Session, actor: Actor, run_id: int) -> PayrollRun:
    return _load_run(session, actor, run_id)


def list_runs(
    session: Session,
    actor: Actor,
    *,
    limit: int = 20,
    cursor: Optional[str] = None,
    status: Optional[str] = None,
) -> tuple[list[PayrollRun], Optional[str]]:
    """Newest-first page of runs plus the cursor for the next page."""
    _require_hr(actor)
    limit = max(1, min(int(limit or 20), 100))
    q = session.query(PayrollRun).filter(PayrollRun.company_id == actor.company_id)
    if status:
        q = q.filter(PayrollRun.status == status)
    if cursor:
        try:
            ts, row_id = parse_keyset_cursor(cursor)
        except ValueError as exc:
            raise ValidationFailed("Invalid cursor.") from exc
        q = q.filter(
            or_(PayrollRun.created_at < ts, and_(PayrollRun.created_at == ts, PayrollRun.id < row_id))
        )
    rows = q.order_by(PayrollRun.created_at.desc(), PayrollRun.id.desc()).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        last = rows[-1]
        next_cursor = keyset_cursor(last.created_at, last.id)
    return rows, next_cursor


def run_summary(run: PayrollRun) -> dict[str, Any]:
    period = run.pay_period
    return {
        "id": run.id,
        "run_number": run.run_number,
        "run_type": run.run_type,
        "status": run.status,
        "current_step": run.current_step,
        "pay_period": {
            "id": period.id,
            "year": period.year,
            "period_number": period.period_number,
            "cutoff_start": period.cutoff_start.isoformat(),
            "cutoff_end": period.cutoff_end.isoformat(),
            "pay_date": period.pay_date.isoformat(),
            "status": period.status,
        },
        "total_employees": run.total_employees,
        "total_gross_pay": str(run.total_gross_pay or ZERO),
        "total_deductions": str(run.total_deductions or ZERO),
        "total_net_pay": str(run.total_net_pay or ZERO),
        "total_employer_contributions": str(run.total_employer_contributions or ZERO),
        "total_employer_cost": str(run.total_employer_cost or ZERO),
        "created_at": run.created_at.isoformat() if run.created_at else None,
    }


def run_detail(run: PayrollRun) -> dict[str, Any]:
    data = run_summary(run)
    data["filters"] = json.loads(RunFilters.from_json(run.filters_json).to_json())
    data["steps"] = [
        {
            "step_number": s.step_number,
            "step_name": s.step_name,
            "status": s.status,
            "is_completed": s.is_completed,
            "completed_at": s.completed_at.isoformat() if s.completed_at else None,
            "notes": json.loads(s.notes_json or "{}"),
            "validation_errors": json.loads(s.validation_errors_json or "[]"),
            "validation_warnings": json.loads(s.validation_warnings_json or "[]"),
        }
        for s in run.steps
    ]
    return data
