"""Payroll calculation engine.

``compute_run_payslips`` rebuilds every payslip of a run from attendance,
recurring items, statutory tables and loans. It only flushes; the caller
owns the transaction so a failed calculation leaves nothing behind.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from core.errors import ValidationFailed
from core.models import (
    DailyTimeRecord,
    Employee,
    Holiday,
    LeaveRequest,
    Loan,
    LoanAmortization,
    LoanPayment,
    OvertimeRequest,
    PayPeriod,
    PayrollRun,
    Payslip,
    PayslipDeduction,
    PayslipEarning,
    RecurringDeduction,
    RecurringEarning,
    utc_now,
)
from core.repositories import employees as employees_repo
from core.settings import get_settings
from core.utils.dates import date_range, inclusive_days, year_start

from . import statutory
from .calculation import (
    ZERO,
    AttendanceSnapshot,
    DayRecord,
    HolidayInfo,
    LeaveSpan,
    attendance_rule_deduction,
    attendance_snapshot,
    daily_rate_for,
    hourly_rate_for,
    parse_rest_days,
    prorate_recurring_earning,
    round_currency,
    to_decimal,
)
from .policy import get_policy

logger = logging.getLogger("hris_core.payroll")

CALCULATION_VERSION = "PH-PAYROLL-CALC-V2026.02.09"
BONUS_RUN_TYPES = ("THIRTEENTH_MONTH", "MID_YEAR_BONUS")
COMPUTED_STATUSES = ("COMPUTED", "FOR_REVIEW", "APPROVED", "FOR_PAYMENT", "PAID")
BASIC_PAY_LABELS = {
    "REGULAR": ("BASIC_PAY", "Basic Pay"),
    "THIRTEENTH_MONTH": ("THIRTEENTH_MONTH", "13th Month Pay"),
    "MID_YEAR_BONUS": ("MID_YEAR_BONUS", "Mid-Year Bonus"),
}


@dataclass(frozen=True)
class RunFilters:
    department_ids: tuple[int, ...] = ()
    employee_ids: tuple[int, ...] = ()

    def to_json(self) -> str:
        return json.dumps({"department_ids": list(self.department_ids), "employee_ids": list(self.employee_ids)})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "RunFilters":
        try:
            data = json.loads(raw or "{}")
        except (TypeError, ValueError):
            data = {}
        if not isinstance(data, dict):
            data = {}
        return cls(
            department_ids=tuple(int(x) for x in data.get("department_ids") or ()),
            employee_ids=tuple(int(x) for x in data.get("employee_ids") or ()),
        )


def is_second_half(period: PayPeriod) -> bool:
    if period.pay_frequency != "SEMI_MONTHLY":
        return True
    return period.period_half == "SECOND"


@dataclass
class EarningLine:
    code: str
    description: str
    amount: Decimal
    hours: Optional[Decimal] = None
    multiplier: Optional[Decimal] = None
    is_taxable: bool = True
    is_manual: bool = False


@dataclass
class DeductionLine:
    code: str
    description: str
    amount: Decimal
    reference_type: str = ""
    reference_id: Optional[int] = None
    is_pre_tax: bool = False
    is_manual: bool = False


@dataclass
class LoanApplication:
    amortization: LoanAmortization
    amount: Decimal


@dataclass
class PriorTotals:
    gross: Decimal = ZERO
    net: Decimal = ZERO
    taxable: Decimal = ZERO
    withheld: Decimal = ZERO
    contributions: Decimal = ZERO


@dataclass
class EmployeeComputation:
    base_salary: Decimal
    daily_rate: Decimal
    hourly_rate: Decimal
    snapshot: AttendanceSnapshot
    basic_pay: Decimal
    gross_pay: Decimal
    taxable_income: Decimal
    sss: statutory.ContributionShare
    philhealth: statutory.ContributionShare
    pagibig: statutory.ContributionShare
    withholding_tax: Decimal
    earnings: list[EarningLine] = field(default_factory=list)
    deductions: list[DeductionLine] = field(default_factory=list)
    loans: list[LoanApplication] = field(default_factory=list)
    prior: PriorTotals = field(default_factory=PriorTotals)

    @property
    def total_deductions(self) -> Decimal:
        return round_currency(sum((line.amount for line in self.deductions), ZERO))

    @property
    def net_pay(self) -> Decimal:
        return max(round_currency(self.gross_pay - self.total_deductions), ZERO)


@dataclass
class StatutoryDiagnostics:
    counts: dict[str, dict[str, int]] = field(
        default_factory=lambda: {
            name: {"applied": 0, "skipped_by_timing": 0, "no_match": 0}
            for name in ("sss", "philhealth", "pagibig", "withholding_tax")
        }
    )

    def mark(self, name: str, outcome: str) -> None:
        self.counts[name][outcome] += 1


@dataclass
class RunContext:
    run: PayrollRun
    period: PayPeriod
    policy: dict[str, Any]
    tables: statutory.ActiveTables
    dates: list[dt.date]
    holidays: dict[dt.date, HolidayInfo]
    night_diff_rate: Decimal
    leaves: dict[int, list[LeaveSpan]] = field(default_factory=dict)
    records: dict[int, dict[dt.date, DayRecord]] = field(default_factory=dict)
    overtime: dict[int, dict[dt.date, Decimal]] = field(default_factory=dict)
    recurring_earnings: dict[int, list[RecurringEarning]] = field(default_factory=dict)
    recurring_deductions: dict[int, list[RecurringDeduction]] = field(default_factory=dict)
    amortizations: dict[int, list[LoanAmortization]] = field(default_factory=dict)
    regular_basic_ytd: dict[int, Decimal] = field(default_factory=dict)
    regular_gross_ytd: dict[int, Decimal] = field(default_factory=dict)
    prior_paid: dict[int, PriorTotals] = field(default_factory=dict)
    prior_bonus: dict[int, Decimal] = field(default_factory=dict)
    prior_pre_tax: dict[int, Decimal] = field(default_factory=dict)
    diagnostics: StatutoryDiagnostics = field(default_factory=StatutoryDiagnostics)

    @property
    def is_bonus_run(self) -> bool:
        return self.run.run_type in BONUS_RUN_TYPES

    @property
    def schedule(self) -> dict[str, str]:
        return self.policy.get("statutory_schedule") or {}


# --------------------------------------------------------------------------
# Preloading
# --------------------------------------------------------------------------


def _load_holidays(session: Session, period: PayPeriod) -> dict[dt.date, HolidayInfo]:
    rows = (
        session.query(Holiday)
        .filter(
            Holiday.holiday_date.between(period.cutoff_start, period.cutoff_end),
            or_(Holiday.company_id == period.company_id, Holiday.company_id.is_(None)),
        )
        .all()
    )
    # Company-specific holidays override global ones on the same date.
    rows.sort(key=lambda h: h.company_id is not None)
    return {h.holiday_date: HolidayInfo(h.holiday_type, to_decimal(h.pay_multiplier)) for h in rows}


def _prior_paid_query(session: Session, run: PayrollRun, *columns):
    period = run.pay_period
    return (
        session.query(Payslip.employee_id, *columns)
        .join(PayrollRun, Payslip.payroll_run_id == PayrollRun.id)
        .join(PayPeriod, PayrollRun.pay_period_id == PayPeriod.id)
        .filter(
            PayrollRun.company_id == run.company_id,
            PayrollRun.id != run.id,
            PayrollRun.status == "PAID",
            PayPeriod.year == period.year,
            PayPeriod.cutoff_end < period.cutoff_start,
        )
    )


def _sum(column):
    return func.coalesce(func.sum(column), 0)


def load_context(session: Session, run: PayrollRun, employee_ids: list[int]) -> RunContext:
    period = run.pay_period
    policy = get_policy(session, run.company_id, period.year)
    nd_rate = (policy.get("night_diff") or {}).get("rate")
    ctx = RunContext(
        run=run,
        period=period,
        policy=policy,
        tables=statutory.active_tables(session, period.cutoff_end),
        dates=list(date_range(period.cutoff_start, period.cutoff_end)),
        holidays=_load_holidays(session, period),
        night_diff_rate=to_decimal(nd_rate) if nd_rate not in (None, "") else get_settings().night_diff_rate,
    )
    if not employee_ids:
        return ctx

    leaves = (
        session.query(LeaveRequest)
        .filter(
            LeaveRequest.employee_id.in_(employee_ids),
            LeaveRequest.status == "APPROVED",
            LeaveRequest.start_date <= period.cutoff_end,
            LeaveRequest.end_date >= period.cutoff_start,
        )
        .all()
    )
    for leave in leaves:
        ctx.leaves.setdefault(leave.employee_id, []).append(
            LeaveSpan(leave.start_date, leave.end_date, bool(leave.is_paid), bool(leave.is_half_day))
        )

    dtrs = (
        session.query(DailyTimeRecord)
        .filter(
            DailyTimeRecord.employee_id.in_(employee_ids),
            DailyTimeRecord.attendance_date.between(period.cutoff_start, period.cutoff_end),
            DailyTimeRecord.approval_status == "APPROVED",
        )
        .all()
    )
    for rec in dtrs:
        ctx.records.setdefault(rec.employee_id, {})[rec.attendance_date] = DayRecord(
            attendance_status=rec.attendance_status,
            hours_worked=to_decimal(rec.hours_worked),
            night_diff_hours=to_decimal(rec.night_diff_hours),
            tardiness_mins=int(rec.tardiness_mins or 0),
            undertime_mins=int(rec.undertime_mins or 0),
            remarks=rec.remarks or "",
        )

    ot_rows = (
        session.query(OvertimeRequest.employee_id, OvertimeRequest.overtime_date, _sum(OvertimeRequest.hours))
        .filter(
            OvertimeRequest.employee_id.in_(employee_ids),
            OvertimeRequest.status == "APPROVED",
            OvertimeRequest.overtime_date.between(period.cutoff_start, period.cutoff_end),
        )
        .group_by(OvertimeRequest.employee_id, OvertimeRequest.overtime_date)
        .all()
    )
    for emp_id, ot_date, hours in ot_rows:
        ctx.overtime.setdefault(emp_id, {})[ot_date] = to_decimal(hours)

    earnings = (
        session.query(RecurringEarning)
        .filter(
            RecurringEarning.employee_id.in_(employee_ids),
            RecurringEarning.is_active.is_(True),
            RecurringEarning.effective_from <= period.cutoff_end,
            or_(RecurringEarning.effective_to.is_(None), RecurringEarning.effective_to >= period.cutoff_start),
        )
        .order_by(RecurringEarning.id.asc())
        .all()
    )
    for item in earnings:
        ctx.recurring_earnings.setdefault(item.employee_id, []).append(item)

    deductions = (
        session.query(RecurringDeduction)
        .filter(
            RecurringDeduction.employee_id.in_(employee_ids),
            RecurringDeduction.status == "ACTIVE",
            RecurringDeduction.effective_from <= period.cutoff_end,
            or_(RecurringDeduction.effective_to.is_(None), RecurringDeduction.effective_to >= period.cutoff_start),
        )
        .order_by(RecurringDeduction.id.asc())
        .all()
    )
    for item in deductions:
        ctx.recurring_deductions.setdefault(item.employee_id, []).append(item)

    amortizations = (
        session.query(LoanAmortization)
        .join(Loan, LoanAmortization.loan_id == Loan.id)
        .filter(
            Loan.employee_id.in_(employee_ids),
            Loan.status == "ACTIVE",
            LoanAmortization.is_paid.is_(False),
            LoanAmortization.due_date <= period.cutoff_end,
        )
        .order_by(Loan.priority.asc(), LoanAmortization.due_date.asc(), LoanAmortization.id.asc())
        .all()
    )
    for amort in amortizations:
        ctx.amortizations.setdefault(amort.loan.employee_id, []).append(amort)

    ytd_rows = (
        session.query(Payslip.employee_id, _sum(Payslip.basic_pay), _sum(Payslip.gross_pay))
        .join(PayrollRun, Payslip.payroll_run_id == PayrollRun.id)
        .join(PayPeriod, PayrollRun.pay_period_id == PayPeriod.id)
        .filter(
            Payslip.employee_id.in_(employee_ids),
            PayrollRun.company_id == run.company_id,
            PayrollRun.id != run.id,
            PayrollRun.run_type == "REGULAR",
            PayrollRun.status.in_(COMPUTED_STATUSES),
            PayPeriod.year == period.year,
            PayPeriod.cutoff_end <= period.cutoff_end,
        )
        .group_by(Payslip.employee_id)
        .all()
    )
    for emp_id, basic, gross in ytd_rows:
        ctx.regular_basic_ytd[emp_id] = to_decimal(basic)
        ctx.regular_gross_ytd[emp_id] = to_decimal(gross)

    paid_rows = (
        _prior_paid_query(
            session,
            run,
            _sum(Payslip.gross_pay),
            _sum(Payslip.net_pay),
            _sum(Payslip.taxable_income),
            _sum(Payslip.withholding_tax),
            _sum(Payslip.sss_employee + Payslip.philhealth_employee + Payslip.pagibig_employee),
        )
        .filter(Payslip.employee_id.in_(employee_ids))
        .group_by(Payslip.employee_id)
        .all()
    )
    for emp_id, gross, net, taxable, withheld, contributions in paid_rows:
        ctx.prior_paid[emp_id] = PriorTotals(
            gross=to_decimal(gross),
            net=to_decimal(net),
            taxable=to_decimal(taxable),
            withheld=to_decimal(withheld),
            contributions=to_decimal(contributions),
        )

    bonus_rows = (
        _prior_paid_query(session, run, _sum(Payslip.gross_pay))
        .filter(Payslip.employee_id.in_(employee_ids), PayrollRun.run_type.in_(BONUS_RUN_TYPES))
        .group_by(Payslip.employee_id)
        .all()
    )
    ctx.prior_bonus = {emp_id: to_decimal(total) for emp_id, total in bonus_rows}

    pre_tax_rows = (
        _prior_paid_query(session, run, _sum(PayslipDeduction.amount))
        .join(PayslipDeduction, PayslipDeduction.payslip_id == Payslip.id)
        .filter(
            Payslip.employee_id.in_(employee_ids),
            PayrollRun.run_type == "REGULAR",
            PayslipDeduction.reference_type == "RECURRING",
            PayslipDeduction.is_pre_tax.is_(True),
        )
        .group_by(Payslip.employee_id)
        .all()
    )
    ctx.prior_pre_tax = {emp_id: to_decimal(total) for emp_id, total in pre_tax_rows}
    return ctx


# --------------------------------------------------------------------------
# Per-employee calculation
# --------------------------------------------------------------------------


def _monthly_base(salary) -> Decimal:
    base = to_decimal(salary.base_salary)
    if salary.salary_rate_type == "DAILY":
        divisor = Decimal(salary.monthly_divisor or 365)
        return round_currency(base * divisor / 12)
    return base


def _thirteenth_month_pay(ctx: RunContext, employee: Employee, base: Decimal) -> Decimal:
    formula = str((ctx.policy.get("thirteenth_month") or {}).get("formula") or "BASIC_EARNED_TO_DATE")
    if formula == "GROSS_EARNED_TO_DATE":
        ytd = ctx.regular_gross_ytd.get(employee.id, ZERO)
    else:
        ytd = ctx.regular_basic_ytd.get(employee.id, ZERO)
    if ytd > 0:
        return round_currency(ytd / 12)
    cutoff_end = ctx.period.cutoff_end
    start = max(employee.hire_date, year_start(cutoff_end.year))
    end = min(employee.separation_date or cutoff_end, cutoff_end)
    return round_currency(base * Decimal(inclusive_days(start, end)) / Decimal(365))


def _statutory_share(ctx: RunContext, name: str, compute) -> statutory.ContributionShare:
    period = ctx.period
    if ctx.is_bonus_run or not statutory.should_apply(ctx.schedule.get(name), period.pay_frequency, period.period_half):
        ctx.diagnostics.mark(name, "skipped_by_timing")
        return statutory.ContributionShare()
    share = compute()
    if not share.matched:
        ctx.diagnostics.mark(name, "no_match")
    elif share.employee > 0:
        ctx.diagnostics.mark(name, "applied")
    return share


def _recurring_deduction_lines(
    ctx: RunContext,
    employee: Employee,
    *,
    basic_pay: Decimal,
    gross_pay: Decimal,
    net_base: Decimal,
) -> list[DeductionLine]:
    lines: list[DeductionLine] = []
    if ctx.is_bonus_run:
        return lines
    half = ctx.period.period_half
    second_half = is_second_half(ctx.period)
    for item in ctx.recurring_deductions.get(employee.id, []):
        if item.applicability == "FIRST_HALF" and half != "FIRST":
            continue
        if item.applicability == "SECOND_HALF" and half != "SECOND":
            continue
        if item.frequency == "MONTHLY" and not second_half:
            continue
        amount = to_decimal(item.amount)
        if item.is_percentage and item.percentage_rate:
            rate = to_decimal(item.percentage_rate)
            if item.percentage_base == "BASIC":
                amount = basic_pay * rate
            elif item.percentage_base == "NET":
                amount = net_base * rate
            else:
                amount = gross_pay * rate
        if item.max_deduction is not None:
            amount = min(amount, to_decimal(item.max_deduction))
        amount = round_currency(max(amount, ZERO))
        if amount <= 0:
            continue
        lines.append(
            DeductionLine(
                code=item.code or "RECURRING",
                description=item.description,
                amount=amount,
                reference_type="RECURRING",
                reference_id=item.id,
                is_pre_tax=bool(item.is_pre_tax),
            )
        )
    return lines


def _withholding_tax(
    ctx: RunContext,
    employee: Employee,
    *,
    gross_pay: Decimal,
    taxable: Decimal,
    contributions: Decimal,
    pre_tax: Decimal,
    prior: PriorTotals,
) -> Decimal:
    period = ctx.period
    timing = ctx.schedule.get("withholding_tax")
    if ctx.is_bonus_run or not statutory.should_apply(timing, period.pay_frequency, period.period_half):
        ctx.diagnostics.mark("withholding_tax", "skipped_by_timing")
        return ZERO

    if employee.is_substituted_filing:
        tax = statutory.substituted_filing_tax(taxable)
    elif ctx.tables.tax_annual:
        tax = statutory.compute_annualized_withholding(
            ctx.tables.tax_annual,
            prior_gross=prior.gross,
            current_gross=gross_pay,
            prior_contributions=prior.contributions,
            current_contributions=contributions,
            prior_bonus=ctx.prior_bonus.get(employee.id, ZERO),
            prior_pre_tax=ctx.prior_pre_tax.get(employee.id, ZERO),
            current_pre_tax=pre_tax,
            prior_withheld=prior.withheld,
        )
    else:
        matched = statutory.compute_bracket_tax(ctx.tables.tax_rows_for(period.pay_frequency), taxable)
        if matched is None:
            if taxable > 0:
                ctx.diagnostics.mark("withholding_tax", "no_match")
            return ZERO
        tax = matched
    if tax > 0:
        ctx.diagnostics.mark("withholding_tax", "applied")
    return tax


def calculate_employee(
    ctx: RunContext,
    employee: Employee,
    adjustments: Optional[dict[str, list]] = None,
) -> Optional[EmployeeComputation]:
    """Compute one payslip; None when the employee has nothing to pay out."""
    salary = employee.salary
    if salary is None or not salary.is_active:
        return None
    run_type = ctx.run.run_type
    if run_type == "THIRTEENTH_MONTH" and not employee.has_thirteenth_month:
        return None

    period = ctx.period
    policy = ctx.policy
    base = to_decimal(salary.base_salary)
    daily = daily_rate_for(base, daily_override=salary.daily_rate, monthly_divisor=salary.monthly_divisor)
    hourly = hourly_rate_for(daily, hourly_override=salary.hourly_rate, hours_per_day=salary.hours_per_day)
    bonus_run = ctx.is_bonus_run

    if bonus_run:
        snap = AttendanceSnapshot()
    else:
        snap = attendance_snapshot(
            ctx.dates,
            rest_days=parse_rest_days(employee.rest_days),
            holidays=ctx.holidays,
            leaves=ctx.leaves.get(employee.id, []),
            records=ctx.records.get(employee.id, {}),
            approved_overtime=ctx.overtime.get(employee.id, {}),
            overtime_multipliers=policy.get("overtime_multipliers") or {},
            daily_rate=daily,
            hourly_rate=hourly,
            overtime_eligible=bool(employee.is_overtime_eligible),
            night_diff_eligible=bool(employee.is_night_diff_eligible),
        )

    if run_type == "THIRTEENTH_MONTH":
        basic_pay = _thirteenth_month_pay(ctx, employee, base)
    elif run_type == "MID_YEAR_BONUS":
        basic_pay = round_currency(base / 2)
    elif salary.salary_rate_type == "MONTHLY":
        period_base = base * 12 / Decimal(max(period.periods_per_year or 24, 1))
        basic_pay = round_currency(max(period_base - snap.unpaid_absences * daily, ZERO))
    else:
        basic_pay = round_currency(snap.payable_days * daily)

    code, label = BASIC_PAY_LABELS.get(run_type, BASIC_PAY_LABELS["REGULAR"])
    earnings: list[EarningLine] = [EarningLine(code, label, basic_pay)]

    recurring_total = ZERO
    if not bonus_run:
        for item in ctx.recurring_earnings.get(employee.id, []):
            if item.frequency == "MONTHLY" and not is_second_half(period):
                continue
            amount = prorate_recurring_earning(
                to_decimal(item.amount),
                proration=item.proration,
                payable_days=snap.payable_days,
                working_days=period.working_days or snap.total_working_days,
                hours_worked=snap.hours_worked,
                hours_per_day=to_decimal(salary.hours_per_day),
            )
            if amount <= 0:
                continue
            recurring_total += amount
            earnings.append(EarningLine("RECURRING", item.description, amount, is_taxable=bool(item.is_taxable)))

    adjustments = adjustments or {}
    manual_earnings = [
        EarningLine(e.code or "ADJUSTMENT", e.description, round_currency(max(to_decimal(e.amount), ZERO)),
                    is_taxable=bool(e.is_taxable), is_manual=True)
        for e in adjustments.get("earnings", [])
    ]
    earnings.extend(manual_earnings)
    manual_earnings_total = sum((e.amount for e in manual_earnings), ZERO)

    overtime_pay = snap.overtime_pay
    night_diff_pay = round_currency(snap.night_diff_hours * hourly * ctx.night_diff_rate)
    holiday_pay = snap.holiday_premium_pay
    if overtime_pay > 0:
        earnings.append(EarningLine("OVERTIME", "Overtime Pay", overtime_pay, hours=snap.overtime_hours))
    if night_diff_pay > 0:
        earnings.append(
            EarningLine("NIGHT_DIFF", "Night Differential", night_diff_pay,
                        hours=snap.night_diff_hours, multiplier=ctx.night_diff_rate)
        )
    if holiday_pay > 0:
        earnings.append(EarningLine("HOLIDAY_PAY", "Holiday Premium", holiday_pay))

    gross_pay = round_currency(
        basic_pay + overtime_pay + night_diff_pay + holiday_pay + recurring_total + manual_earnings_total
    )

    rules = policy.get("attendance_rules") or {}
    tardiness = ZERO
    undertime = ZERO
    if not bonus_run:
        tardiness = attendance_rule_deduction(
            snap.tardiness_mins, hourly_rate=hourly, daily_rate=daily, rule=rules.get("TARDINESS")
        )
        undertime = attendance_rule_deduction(
            snap.undertime_mins, hourly_rate=hourly, daily_rate=daily, rule=rules.get("UNDERTIME")
        )

    monthly_base = _monthly_base(salary)
    tables = ctx.tables
    sss = _statutory_share(ctx, "sss", lambda: statutory.compute_sss(tables.sss, monthly_base))
    philhealth = _statutory_share(
        ctx, "philhealth", lambda: statutory.compute_philhealth(tables.philhealth, monthly_base)
    )
    pagibig = _statutory_share(ctx, "pagibig", lambda: statutory.compute_pagibig(tables.pagibig, monthly_base))
    contributions = sss.employee + philhealth.employee + pagibig.employee

    net_base = max(gross_pay - (tardiness + undertime + contributions), ZERO)
    recurring_lines = _recurring_deduction_lines(
        ctx, employee, basic_pay=basic_pay, gross_pay=gross_pay, net_base=net_base
    )
    pre_tax = round_currency(sum((line.amount for line in recurring_lines if line.is_pre_tax), ZERO))
    taxable = round_currency(max(gross_pay - contributions - pre_tax, ZERO))

    prior = ctx.prior_paid.get(employee.id, PriorTotals())
    wtax = _withholding_tax(
        ctx, employee, gross_pay=gross_pay, taxable=taxable, contributions=contributions, pre_tax=pre_tax, prior=prior
    )

    manual_deductions = [
        DeductionLine(
            d.code or "ADJUSTMENT",
            d.description,
            round_currency(max(to_decimal(d.amount), ZERO)),
            reference_type=d.reference_type or "ADJUSTMENT",
            is_manual=True,
        )
        for d in adjustments.get("deductions", [])
    ]

    deductions: list[DeductionLine] = []
    if tardiness > 0:
        deductions.append(DeductionLine("TARDINESS", "Tardiness Deduction", tardiness, "ATTENDANCE"))
    if undertime > 0:
        deductions.append(DeductionLine("UNDERTIME", "Undertime Deduction", undertime, "ATTENDANCE"))
    if sss.employee > 0:
        deductions.append(DeductionLine("SSS", "SSS Contribution", sss.employee, "GOVERNMENT"))
    if philhealth.employee > 0:
        deductions.append(DeductionLine("PHILHEALTH", "PhilHealth Contribution", philhealth.employee, "GOVERNMENT"))
    if pagibig.employee > 0:
        deductions.append(DeductionLine("PAGIBIG", "Pag-IBIG Contribution", pagibig.employee, "GOVERNMENT"))
    if wtax > 0:
        deductions.append(DeductionLine("WTAX", "Withholding Tax", wtax, "TAX"))
    deductions.extend(recurring_lines)
    deductions.extend(manual_deductions)

    available = max(gross_pay - sum((line.amount for line in deductions), ZERO), ZERO)
    loans: list[LoanApplication] = []
    if not bonus_run:
        for amort in ctx.amortizations.get(employee.id, []):
            amount = round_currency(amort.amount)
            if amount <= 0 or available < amount:
                continue
            loan = amort.loan
            deductions.append(
                DeductionLine("LOAN_PAYMENT", f"Loan Amortization ({loan.loan_number})", amount, "LOAN", loan.id)
            )
            loans.append(LoanApplication(amort, amount))
            available = round_currency(max(available - amount, ZERO))

    return EmployeeComputation(
        base_salary=base,
        daily_rate=round_currency(daily),
        hourly_rate=round_currency(hourly),
        snapshot=snap,
        basic_pay=basic_pay,
        gross_pay=gross_pay,
        taxable_income=taxable,
        sss=sss,
        philhealth=philhealth,
        pagibig=pagibig,
        withholding_tax=wtax,
        earnings=earnings,
        deductions=deductions,
        loans=loans,
        prior=prior,
    )


# --------------------------------------------------------------------------
# Persistence
# --------------------------------------------------------------------------


def payslip_number(run: PayrollRun, employee: Employee) -> str:
    return f"PSL-{run.run_number.removeprefix('RUN-')}-{employee.employee_number}"


def reverse_loan_payments(session: Session, run: PayrollRun) -> int:
    """Undo loan payments a previous calculation of ``run`` recorded."""
    payments = session.query(LoanPayment).filter(LoanPayment.payroll_run_id == run.id).all()
    for payment in payments:
        loan = session.get(Loan, payment.loan_id)
        if loan is not None:
            loan.balance = round_currency(to_decimal(loan.balance) + to_decimal(payment.amount))
            loan.status = "ACTIVE"
        if payment.amortization_id:
            amort = session.get(LoanAmortization, payment.amortization_id)
            if amort is not None:
                amort.is_paid = False
                amort.paid_at = None
                amort.payslip_id = None
        session.delete(payment)
    if payments:
        session.flush()
    return len(payments)


def _carried_adjustments(run: PayrollRun) -> dict[int, dict[str, list]]:
    carried: dict[int, dict[str, list]] = defaultdict(lambda: {"earnings": [], "deductions": []})
    for slip in run.payslips:
        for e in slip.earnings:
            if e.is_manual:
                carried[slip.employee_id]["earnings"].append(
                    EarningLine(e.code, e.description, to_decimal(e.amount), is_taxable=bool(e.is_taxable), is_manual=True)
                )
        for d in slip.deductions:
            if d.is_manual:
                carried[slip.employee_id]["deductions"].append(
                    DeductionLine(
                        d.code, d.description, to_decimal(d.amount), reference_type=d.reference_type, is_manual=True
                    )
                )
    return dict(carried)


def _persist_payslip(session: Session, run: PayrollRun, employee: Employee, comp: EmployeeComputation) -> Payslip:
    snap = comp.snapshot
    slip = Payslip(
        payroll_run_id=run.id,
        employee_id=employee.id,
        payslip_number=payslip_number(run, employee),
        base_salary=comp.base_salary,
        daily_rate=comp.daily_rate,
        hourly_rate=comp.hourly_rate,
        days_worked=snap.payable_days,
        days_absent=snap.unpaid_absences,
        overtime_hours=snap.overtime_hours,
        night_diff_hours=snap.night_diff_hours,
        basic_pay=comp.basic_pay,
        gross_pay=comp.gross_pay,
        total_earnings=round_currency(comp.gross_pay - comp.basic_pay),
        total_deductions=comp.total_deductions,
        net_pay=comp.net_pay,
        taxable_income=comp.taxable_income,
        sss_employee=comp.sss.employee,
        sss_employer=comp.sss.employer,
        philhealth_employee=comp.philhealth.employee,
        philhealth_employer=comp.philhealth.employer,
        pagibig_employee=comp.pagibig.employee,
        pagibig_employer=comp.pagibig.employer,
        withholding_tax=comp.withholding_tax,
        ytd_gross=round_currency(comp.prior.gross + comp.gross_pay),
        ytd_taxable=round_currency(comp.prior.taxable + comp.taxable_income),
        ytd_tax_withheld=round_currency(comp.prior.withheld + comp.withholding_tax),
    )
    for line in comp.earnings:
        slip.earnings.append(
            PayslipEarning(
                code=line.code,
                description=line.description,
                amount=line.amount,
                hours=line.hours,
                multiplier=line.multiplier,
                is_taxable=line.is_taxable,
                is_manual=line.is_manual,
            )
        )
    for line in comp.deductions:
        slip.deductions.append(
            PayslipDeduction(
                code=line.code,
                description=line.description,
                amount=line.amount,
                reference_type=line.reference_type,
                reference_id=line.reference_id,
                is_pre_tax=line.is_pre_tax,
                is_manual=line.is_manual,
            )
        )
    session.add(slip)
    session.flush()

    for applied in comp.loans:
        amort = applied.amortization
        loan = amort.loan
        balance = round_currency(max(to_decimal(loan.balance) - applied.amount, ZERO))
        loan.balance = balance
        if balance <= 0:
            loan.status = "FULLY_PAID"
        amort.is_paid = True
        amort.paid_at = utc_now()
        amort.payslip_id = slip.id
        session.add(
            LoanPayment(
                loan_id=loan.id,
                amortization_id=amort.id,
                payroll_run_id=run.id,
                amount=applied.amount,
                balance_after=balance,
                payment_date=run.pay_period.cutoff_end,
            )
        )
    return slip


def _trace(employee: Employee, comp: EmployeeComputation) -> dict[str, Any]:
    snap = comp.snapshot
    return {
        "employee_id": employee.id,
        "employee_number": employee.employee_number,
        "name": employee.full_name,
        "attendance": {
            "working_days": snap.total_working_days,
            "payable_days": str(snap.payable_days),
            "unpaid_absences": str(snap.unpaid_absences),
            "tardiness_mins": snap.tardiness_mins,
            "undertime_mins": snap.undertime_mins,
            "overtime_hours": str(snap.overtime_hours),
            "overtime_by_type": {k: str(v) for k, v in snap.overtime_by_type.items()},
            "night_diff_hours": str(snap.night_diff_hours),
        },
        "rates": {"base": str(comp.base_salary), "daily": str(comp.daily_rate), "hourly": str(comp.hourly_rate)},
        "earnings": [{"code": e.code, "amount": str(e.amount)} for e in comp.earnings],
        "deductions": [{"code": d.code, "amount": str(d.amount)} for d in comp.deductions],
        "gross_pay": str(comp.gross_pay),
        "taxable_income": str(comp.taxable_income),
        "net_pay": str(comp.net_pay),
    }


def recompute_payslip_totals(slip: Payslip) -> None:
    """Re-derive payslip totals from its lines after a manual adjustment."""
    gross = round_currency(sum((to_decimal(e.amount) for e in slip.earnings), ZERO))
    deductions = round_currency(sum((to_decimal(d.amount) for d in slip.deductions), ZERO))
    slip.gross_pay = gross
    slip.total_earnings = round_currency(gross - to_decimal(slip.basic_pay))
    slip.total_deductions = deductions
    slip.net_pay = max(round_currency(gross - deductions), ZERO)


def recompute_run_totals(run: PayrollRun) -> None:
    slips: Iterable[Payslip] = run.payslips
    gross = deductions = net = employer = ZERO
    count = 0
    for slip in slips:
        count += 1
        gross += to_decimal(slip.gross_pay)
        deductions += to_decimal(slip.total_deductions)
        net += to_decimal(slip.net_pay)
        employer += to_decimal(slip.employer_contributions)
    run.total_employees = count
    run.total_gross_pay = round_currency(gross)
    run.total_deductions = round_currency(deductions)
    run.total_net_pay = round_currency(net)
    run.total_employer_contributions = round_currency(employer)
    run.total_employer_cost = round_currency(gross + employer)


def compute_run_payslips(session: Session, run: PayrollRun) -> dict[str, Any]:
    """Rebuild all payslips of ``run`` and return the calculation notes.

    Manual adjustments survive recalculation; loan payments recorded by an
    earlier calculation of the same run are reversed first.
    """
    period = run.pay_period
    filters = RunFilters.from_json(run.filters_json)
    employees = employees_repo.eligible_employees(
        session,
        period,
        department_ids=filters.department_ids,
        employee_ids=filters.employee_ids,
        include_separated_in_year=run.run_type == "THIRTEENTH_MONTH",
    )

    carried = _carried_adjustments(run)
    reverse_loan_payments(session, run)
    run.payslips.clear()
    session.flush()

    ctx = load_context(session, run, [e.id for e in employees])
    skipped: list[dict[str, Any]] = []
    traces: list[dict[str, Any]] = []
    for employee in employees:
        comp = calculate_employee(ctx, employee, carried.get(employee.id))
        if comp is None:
            skipped.append({"employee_id": employee.id, "employee_number": employee.employee_number})
            continue
        run.payslips.append(_persist_payslip(session, run, employee, comp))
        traces.append(_trace(employee, comp))

    if not traces:
        raise ValidationFailed(
            "No employees were processed. Ensure active salary records exist for all selected employees."
        )

    session.flush()
    recompute_run_totals(run)
    logger.info(
        "payroll computed",
        extra={"run_id": run.id, "company_id": run.company_id},
    )
    return {
        "calculation_version": CALCULATION_VERSION,
        "formula_policy": {
            "run_type": run.run_type,
            "thirteenth_month_formula": (ctx.policy.get("thirteenth_month") or {}).get("formula"),
            "timezone": get_settings().payroll_timezone,
        },
        "processed": len(traces),
        "skipped": len(skipped),
        "skipped_employees": skipped,
        "statutory_diagnostics": ctx.diagnostics.counts,
        "totals": {
            "gross_pay": str(run.total_gross_pay),
            "deductions": str(run.total_deductions),
            "net_pay": str(run.total_net_pay),
            "employer_contributions": str(run.total_employer_contributions),
            "employer_cost": str(run.total_employer_cost),
        },
        "employee_traces": traces,
    }
