from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from core.services.calculation import (
    DayRecord,
    HolidayInfo,
    LeaveSpan,
    attendance_rule_deduction,
    attendance_snapshot,
    overtime_type,
    prorate_recurring_earning,
)
from core.services.policy import DEFAULT_POLICY
from core.utils.dates import date_range

HOURLY = Decimal("100")
DAILY = Decimal("800")
# Monday 2026-01-05 through Sunday 2026-01-11
WEEK = list(date_range(dt.date(2026, 1, 5), dt.date(2026, 1, 11)))
MULTIPLIERS = DEFAULT_POLICY["overtime_multipliers"]


@pytest.mark.parametrize(
    "minutes, rule, expected",
    [
        (0, None, "0"),
        (10, None, "16.67"),
        (10, {"basis": "PER_MINUTE"}, "16.67"),
        (10, {"basis": "PER_15_MINS"}, "25.00"),
        (16, {"basis": "PER_15_MINS"}, "50.00"),
        (31, {"basis": "PER_30_MINS"}, "100.00"),
        (30, {"basis": "PER_30_MINS"}, "50.00"),
        (61, {"basis": "PER_HOUR"}, "200.00"),
        (30, {"basis": "per_hour"}, "100.00"),
        (5, {"basis": "DAILY_RATE"}, "800.00"),
        (10, {"basis": "PER_MINUTE", "threshold_mins": 10}, "0"),
        (25, {"basis": "PER_15_MINS", "threshold_mins": 10}, "25.00"),
        (70, {"basis": "DAILY_RATE", "threshold_mins": 60}, "800.00"),
    ],
)
def test_attendance_rule_deduction(minutes, rule, expected):
    assert attendance_rule_deduction(minutes, hourly_rate=HOURLY, daily_rate=DAILY, rule=rule) == Decimal(expected)


@pytest.mark.parametrize(
    "is_rest_day, holiday_type, expected",
    [
        (False, None, "REGULAR_OT"),
        (True, None, "REST_DAY_OT"),
        (False, "REGULAR", "REGULAR_HOLIDAY_OT"),
        (False, "SPECIAL_NON_WORKING", "SPECIAL_HOLIDAY_OT"),
        (False, "SPECIAL_WORKING", "SPECIAL_HOLIDAY_OT"),
        (True, "REGULAR", "REST_DAY_HOLIDAY_OT"),
        (True, "SPECIAL_NON_WORKING", "REST_DAY_HOLIDAY_OT"),
    ],
)
def test_overtime_type(is_rest_day, holiday_type, expected):
    assert overtime_type(is_rest_day=is_rest_day, holiday_type=holiday_type) == expected


@pytest.mark.parametrize(
    "amount, proration, payable, working, hours, expected",
    [
        ("1000", "NONE", "5", 10, "0", "1000.00"),
        ("1000", "PRORATED_DAYS", "5", 10, "0", "500.00"),
        ("1000", "PRORATED_DAYS", "7.5", 10, "0", "750.00"),
        ("1000", "PRORATED_HOURS", "10", 10, "40", "500.00"),
        ("1000", "PRORATED_DAYS", "5", 0, "0", "1000.00"),
        ("1000", "SOMETHING_ELSE", "5", 10, "0", "1000.00"),
        ("-50", "NONE", "5", 10, "0", "0.00"),
    ],
)
def test_prorate_recurring_earning(amount, proration, payable, working, hours, expected):
    result = prorate_recurring_earning(
        Decimal(amount),
        proration=proration,
        payable_days=Decimal(payable),
        working_days=working,
        hours_worked=Decimal(hours),
    )
    assert result == Decimal(expected)


def _week_snapshot(**overrides):
    mon, tue, wed, thu, fri, sat, sun = WEEK
    params = dict(
        rest_days=("SATURDAY", "SUNDAY"),
        holidays={
            tue: HolidayInfo("REGULAR", Decimal("2.00")),
            sun: HolidayInfo("SPECIAL_NON_WORKING", Decimal("1.30")),
        },
        leaves=[LeaveSpan(fri, fri, is_paid=True)],
        records={
            mon: DayRecord("PRESENT", Decimal("8"), night_diff_hours=Decimal("2"), tardiness_mins=10),
            tue: DayRecord("PRESENT", Decimal("8")),
            wed: DayRecord("PRESENT", Decimal("4"), remarks="Half day - clinic visit", undertime_mins=5),
            sat: DayRecord("PRESENT", Decimal("4")),
            sun: DayRecord("PRESENT", Decimal("8")),
        },
        approved_overtime={
            mon: Decimal("2"),
            tue: Decimal("1"),
            thu: Decimal("3"),  # no DTR that day, never paid
            sat: Decimal("2"),
            sun: Decimal("1"),
        },
        overtime_multipliers=MULTIPLIERS,
        daily_rate=DAILY,
        hourly_rate=HOURLY,
        overtime_eligible=True,
        night_diff_eligible=True,
    )
    params.update(overrides)
    return attendance_snapshot(WEEK, **params)


def test_snapshot_classifies_each_day():
    snap = _week_snapshot()
    assert snap.total_working_days == 5
    # Mon, Tue (holiday), half of Wed, Fri (paid leave), Sat (rest), Sun (holiday)
    assert snap.payable_days == Decimal("5.5000")
    # Half of Wed plus Thu with no record
    assert snap.unpaid_absences == Decimal("1.5000")
    assert snap.hours_worked == Decimal("32.0000")
    assert snap.tardiness_mins == 10
    assert snap.undertime_mins == 5


def test_snapshot_premiums_and_overtime_types():
    snap = _week_snapshot()
    assert snap.night_diff_hours == Decimal("2.0000")
    # Regular holiday 800 * (2.00 - 1) plus special holiday 800 * (1.30 - 1)
    assert snap.holiday_premium_pay == Decimal("1040.00")
    assert snap.overtime_hours == Decimal("6.0000")
    assert snap.overtime_by_type == {
        "REGULAR_OT": Decimal("250.00"),
        "REGULAR_HOLIDAY_OT": Decimal("260.00"),
        "REST_DAY_OT": Decimal("260.00"),
        "REST_DAY_HOLIDAY_OT": Decimal("338.00"),
    }
    assert snap.overtime_pay == Decimal("1108.00")


def test_snapshot_respects_eligibility_flags():
    snap = _week_snapshot(overtime_eligible=False, night_diff_eligible=False)
    assert snap.overtime_pay == Decimal("0.00")
    assert snap.overtime_by_type == {}
    assert snap.night_diff_hours == Decimal("0.0000")
    assert snap.holiday_premium_pay == Decimal("1040.00")


def test_snapshot_unknown_overtime_type_uses_default_multiplier():
    snap = _week_snapshot(overtime_multipliers={})
    # Six paid hours at 100/hour with the 1.25 fallback
    assert snap.overtime_pay == Decimal("750.00")


def test_snapshot_leave_kinds():
    mon, tue, wed, thu, fri, _, _ = WEEK
    snap = attendance_snapshot(
        WEEK[:5],
        rest_days=("SATURDAY", "SUNDAY"),
        holidays={},
        leaves=[
            LeaveSpan(mon, mon, is_paid=True, is_half_day=True),
            LeaveSpan(tue, tue, is_paid=False),
            LeaveSpan(wed, wed, is_paid=False, is_half_day=True),
        ],
        records={
            thu: DayRecord("ON_LEAVE"),
            fri: DayRecord("PRESENT", Decimal("8"), remarks="[HALF_DAY] errand"),
        },
        approved_overtime={},
        overtime_multipliers=MULTIPLIERS,
        daily_rate=DAILY,
        hourly_rate=HOURLY,
        overtime_eligible=True,
        night_diff_eligible=True,
    )
    # Mon 0.5 paid; Fri half day 0.5 paid
    assert snap.payable_days == Decimal("1.0000")
    # Tue 1, Wed 0.5, Thu ON_LEAVE without approved leave 1, Fri 0.5
    assert snap.unpaid_absences == Decimal("3.0000")


def test_holiday_without_attendance_is_paid_but_earns_no_premium():
    tue = WEEK[1]
    snap = attendance_snapshot(
        [tue],
        rest_days=("SATURDAY", "SUNDAY"),
        holidays={tue: HolidayInfo("REGULAR", Decimal("2.00"))},
        leaves=[],
        records={},
        approved_overtime={},
        overtime_multipliers=MULTIPLIERS,
        daily_rate=DAILY,
        hourly_rate=HOURLY,
        overtime_eligible=True,
        night_diff_eligible=True,
    )
    assert snap.payable_days == Decimal("1.0000")
    assert snap.unpaid_absences == Decimal("0.0000")
    assert snap.holiday_premium_pay == Decimal("0.00")


@pytest.mark.parametrize("remarks", ["[HALF_DAY]", "half day", "HALFDAY am"])
def test_half_day_markers(remarks):
    assert DayRecord("PRESENT", remarks=remarks).is_half_day
    assert not DayRecord("PRESENT", remarks="full day").is_half_day
