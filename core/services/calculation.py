from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from core.utils.dates import day_name

CENT = Decimal("0.01")
QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")
ONE = Decimal("1")
HALF = Decimal("0.5")

DEFAULT_REST_DAYS = ("SATURDAY", "SUNDAY")
DEFAULT_OT_MULTIPLIER = Decimal("1.25")
HALF_DAY_MARKERS = ("[HALF_DAY]", "HALF DAY", "HALFDAY")
SPECIAL_HOLIDAY_TYPES = {"SPECIAL_NON_WORKING", "SPECIAL_WORKING"}


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).replace(",", ""))
    except (InvalidOperation, ValueError):
        return ZERO


def round_currency(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_quantity(value: Any) -> Decimal:
    return to_decimal(value).quantize(QUANTUM, rounding=ROUND_HALF_UP)


def daily_rate_for(base_salary: Decimal, *, daily_override: Optional[Decimal], monthly_divisor: Optional[int]) -> Decimal:
    if daily_override:
        return to_decimal(daily_override)
    divisor = Decimal(monthly_divisor or 365)
    return to_decimal(base_salary) * 12 / divisor


def hourly_rate_for(daily_rate: Decimal, *, hourly_override: Optional[Decimal], hours_per_day: Optional[Decimal]) -> Decimal:
    if hourly_override:
        return to_decimal(hourly_override)
    hours = to_decimal(hours_per_day) or Decimal("8")
    return daily_rate / hours


def attendance_rule_deduction(
    minutes: int,
    *,
    hourly_rate: Decimal,
    daily_rate: Decimal,
    rule: Optional[Mapping[str, Any]] = None,
) -> Decimal:
    """Peso deduction for tardiness or undertime minutes under a company rule."""
    threshold = int((rule or {}).get("threshold_mins") or 0)
    deductible = max(int(minutes or 0) - threshold, 0)
    if deductible <= 0:
        return ZERO
    basis = str((rule or {}).get("basis") or "PER_MINUTE").upper()
    if basis == "PER_15_MINS":
        return round_currency(math.ceil(deductible / 15) * (hourly_rate / 4))
    if basis == "PER_30_MINS":
        return round_currency(math.ceil(deductible / 30) * (hourly_rate / 2))
    if basis == "PER_HOUR":
        return round_currency(math.ceil(deductible / 60) * hourly_rate)
    if basis == "DAILY_RATE":
        return round_currency(daily_rate)
    return round_currency(Decimal(deductible) / 60 * hourly_rate)


def parse_rest_days(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return DEFAULT_REST_DAYS
    days = tuple(part.strip().upper() for part in str(value).split(",") if part.strip())
    return days or DEFAULT_REST_DAYS


def overtime_type(*, is_rest_day: bool, holiday_type: Optional[str]) -> str:
    is_regular_holiday = holiday_type == "REGULAR"
    is_special_holiday = holiday_type in SPECIAL_HOLIDAY_TYPES
    if is_rest_day and (is_regular_holiday or is_special_holiday):
        return "REST_DAY_HOLIDAY_OT"
    if is_regular_holiday:
        return "REGULAR_HOLIDAY_OT"
    if is_special_holiday:
        return "SPECIAL_HOLIDAY_OT"
    if is_rest_day:
        return "REST_DAY_OT"
    return "REGULAR_OT"


@dataclass(frozen=True)
class HolidayInfo:
    holiday_type: str
    pay_multiplier: Decimal


@dataclass(frozen=True)
class LeaveSpan:
    start: dt.date
    end: dt.date
    is_paid: bool
    is_half_day: bool = False

    def covers(self, day: dt.date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class DayRecord:
    attendance_status: str
    hours_worked: Decimal = ZERO
    night_diff_hours: Decimal = ZERO
    tardiness_mins: int = 0
    undertime_mins: int = 0
    remarks: str = ""

    @property
    def is_half_day(self) -> bool:
        text = (self.remarks or "").upper()
        return any(marker in text for marker in HALF_DAY_MARKERS)


@dataclass
class AttendanceSnapshot:
    total_working_days: int = 0
    payable_days: Decimal = ZERO
    unpaid_absences: Decimal = ZERO
    tardiness_mins: int = 0
    undertime_mins: int = 0
    hours_worked: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    overtime_pay: Decimal = ZERO
    overtime_by_type: dict[str, Decimal] = field(default_factory=dict)
    night_diff_hours: Decimal = ZERO
    holiday_premium_pay: Decimal = ZERO


def attendance_snapshot(
    dates: Iterable[dt.date],
    *,
    rest_days: Iterable[str],
    holidays: Mapping[dt.date, HolidayInfo],
    leaves: Iterable[LeaveSpan],
    records: Mapping[dt.date, DayRecord],
    approved_overtime: Mapping[dt.date, Decimal],
    overtime_multipliers: Mapping[str, Any],
    daily_rate: Decimal,
    hourly_rate: Decimal,
    overtime_eligible: bool,
    night_diff_eligible: bool,
) -> AttendanceSnapshot:
    """Walk the cutoff day by day and total payable days, absences and premiums.

    Each date counts once, first match wins: holiday, approved paid leave,
    approved unpaid leave, rest day, present DTR, on-leave DTR without a
    matching leave, then plain absence. Overtime is only paid for dates that
    also carry a DTR and an approved overtime request.
    """
    rest = {d.upper() for d in rest_days}
    leave_list = list(leaves)
    snap = AttendanceSnapshot()
    payable = ZERO
    unpaid = ZERO

    for day in dates:
        holiday = holidays.get(day)
        is_rest_day = day_name(day) in rest
        record = records.get(day)
        if not is_rest_day:
            snap.total_working_days += 1

        leave = next((span for span in leave_list if span.covers(day)), None)
        leave_value = HALF if leave and leave.is_half_day else ONE
        record_value = HALF if record and record.is_half_day else ONE

        if holiday:
            payable += ONE
        elif leave and leave.is_paid:
            payable += leave_value
        elif leave:
            unpaid += leave_value
        elif is_rest_day or (record and record.attendance_status == "REST_DAY"):
            payable += ONE
        elif record and record.attendance_status in {"PRESENT", "HOLIDAY"}:
            payable += record_value
            if record.is_half_day:
                unpaid += HALF
        elif record and record.attendance_status == "ON_LEAVE":
            unpaid += record_value
        else:
            unpaid += ONE

        if record is None:
            continue

        snap.tardiness_mins += int(record.tardiness_mins or 0)
        snap.undertime_mins += int(record.undertime_mins or 0)
        snap.hours_worked += to_decimal(record.hours_worked)
        if night_diff_eligible:
            snap.night_diff_hours += to_decimal(record.night_diff_hours)
        if holiday and record.attendance_status == "PRESENT":
            premium = max(to_decimal(holiday.pay_multiplier) - ONE, ZERO)
            snap.holiday_premium_pay += round_currency(daily_rate * premium)

        if not overtime_eligible:
            continue
        ot_hours = to_decimal(approved_overtime.get(day))
        if ot_hours <= 0:
            continue
        snap.overtime_hours += ot_hours
        ot_type = overtime_type(is_rest_day=is_rest_day, holiday_type=holiday.holiday_type if holiday else None)
        multiplier = to_decimal(overtime_multipliers.get(ot_type)) or DEFAULT_OT_MULTIPLIER
        pay = round_currency(ot_hours * hourly_rate * multiplier)
        snap.overtime_pay += pay
        snap.overtime_by_type[ot_type] = snap.overtime_by_type.get(ot_type, ZERO) + pay

    snap.payable_days = round_quantity(payable)
    snap.unpaid_absences = round_quantity(unpaid)
    snap.hours_worked = round_quantity(snap.hours_worked)
    snap.overtime_hours = round_quantity(snap.overtime_hours)
    snap.overtime_pay = round_currency(snap.overtime_pay)
    snap.night_diff_hours = round_quantity(snap.night_diff_hours)
    snap.holiday_premium_pay = round_currency(snap.holiday_premium_pay)
    return snap


def prorate_recurring_earning(
    amount: Decimal,
    *,
    proration: str,
    payable_days: Decimal,
    working_days: int,
    hours_worked: Decimal = ZERO,
    hours_per_day: Decimal = Decimal("8"),
) -> Decimal:
    if working_days <= 0 or proration == "NONE":
        return round_currency(max(amount, ZERO))
    if proration == "PRORATED_DAYS":
        return round_currency(max(amount * payable_days / Decimal(working_days), ZERO))
    if proration == "PRORATED_HOURS":
        scheduled = Decimal(working_days) * (to_decimal(hours_per_day) or Decimal("8"))
        return round_currency(max(amount * to_decimal(hours_worked) / scheduled, ZERO))
    return round_currency(max(amount, ZERO))
