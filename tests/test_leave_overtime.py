from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal

import pytest

from core.errors import NotFound, PermissionDenied, ValidationFailed
from core.models import LeaveBalance, LeaveBalanceTransaction
from core.services import leave, overtime
from core.services.auth import Actor

MON = dt.date(2026, 3, 2)
WED = dt.date(2026, 3, 4)


@pytest.fixture()
def supervisor(supervisor_user):
    return Actor.from_user(supervisor_user)


@pytest.fixture()
def balances(session, hr, employee, leave_types):
    stats = leave.initialize_balances(session, hr, year=2026, credits={"VL": 15, "SL": "10"})
    assert stats["balances_created"] == 2
    return leave_types


def _balance(session, employee, leave_type) -> LeaveBalance:
    session.expire_all()
    return (
        session.query(LeaveBalance)
        .filter(LeaveBalance.employee_id == employee.id, LeaveBalance.leave_type_id == leave_type.id)
        .one()
    )


def _ledger(session, balance) -> list[str]:
    rows = (
        session.query(LeaveBalanceTransaction)
        .filter(LeaveBalanceTransaction.leave_balance_id == balance.id)
        .order_by(LeaveBalanceTransaction.id)
        .all()
    )
    return [row.transaction_type for row in rows]


def test_initialize_balances_reports_stats(session, hr, employee, leave_types):
    stats = leave.initialize_balances(session, hr, year=2026, credits={"VL": 15})
    assert stats["employees_considered"] == 1
    assert stats["balances_created"] == 1
    # SL and EL have no credit configured; unpaid types are never initialized.
    assert stats["skipped_no_policy"] == 2
    assert stats["message"] == "Initialized 1 leave balance row(s) for 2026."

    again = leave.initialize_balances(session, hr, year=2026, credits={"VL": 15})
    assert again["balances_created"] == 0
    assert again["skipped_existing"] == 1


def test_initialize_balances_is_hr_only(session, staff):
    with pytest.raises(PermissionDenied):
        leave.initialize_balances(session, staff, year=2026, credits={"VL": 15})


def test_filing_reserves_and_hr_approval_consumes(session, staff, supervisor, hr, employee, balances):
    vl = balances["VL"]
    request, message = leave.create_request(session, staff, leave_type_id=vl.id, start_date=MON, end_date=WED)
    assert re.fullmatch(r"LR-\d{8}-\d{6}", request.request_number)
    assert message == f"Leave request {request.request_number} submitted."
    assert request.number_of_days == Decimal("3")
    assert request.supervisor_user_id == supervisor.user_id

    bal = _balance(session, employee, vl)
    assert (bal.pending, bal.available_balance, bal.current_balance) == (Decimal("3"), Decimal("12"), Decimal("15"))

    _, message = leave.supervisor_decide(session, supervisor, request.id, decision="approve")
    assert message == "Leave request approved."
    request, message = leave.hr_decide(session, hr, request.id, decision="APPROVE", remarks="ok")
    assert message == "Leave request approved."
    assert request.status == "APPROVED"

    bal = _balance(session, employee, vl)
    assert bal.current_balance == Decimal("12")
    assert bal.pending == Decimal("0")
    assert bal.used == Decimal("3")
    assert bal.available_balance == Decimal("12")
    assert _ledger(session, bal) == ["RESERVATION", "USAGE"]


def test_rejection_releases_reservation(session, staff, supervisor, employee, balances):
    vl = balances["VL"]
    request, _ = leave.create_request(session, staff, leave_type_id=vl.id, start_date=MON, end_date=MON)
    request, message = leave.supervisor_decide(session, supervisor, request.id, decision="REJECT", remarks="busy")
    assert message == "Leave request rejected."
    assert request.status == "REJECTED"
    bal = _balance(session, employee, vl)
    assert (bal.pending, bal.available_balance) == (Decimal("0"), Decimal("15"))
    assert _ledger(session, bal) == ["RESERVATION", "RELEASE"]


def test_cancel_releases_and_only_once(session, staff, employee, balances):
    sl = balances["SL"]
    request, _ = leave.create_request(session, staff, leave_type_id=sl.id, start_date=MON, end_date=MON)
    request, message = leave.cancel_request(session, staff, request.id)
    assert message.endswith("cancelled.")
    assert _balance(session, employee, sl).available_balance == Decimal("10")
    with pytest.raises(ValidationFailed):
        leave.cancel_request(session, staff, request.id)


def test_supervisor_must_be_assigned(session, staff, hr, balances):
    request, _ = leave.create_request(session, staff, leave_type_id=balances["VL"].id, start_date=MON, end_date=MON)
    with pytest.raises(NotFound):
        leave.supervisor_decide(session, hr, request.id, decision="APPROVE")
    with pytest.raises(PermissionDenied):
        leave.hr_decide(session, staff, request.id, decision="APPROVE")
    with pytest.raises(ValidationFailed):
        leave.hr_decide(session, hr, request.id, decision="MAYBE")


def test_insufficient_balance(session, staff, balances):
    with pytest.raises(ValidationFailed) as info:
        leave.create_request(
            session, staff, leave_type_id=balances["SL"].id, start_date=MON, end_date=dt.date(2026, 3, 13)
        )
    assert info.value.message == "Insufficient leave balance for this request."


def test_missing_balance_row(session, staff, employee, leave_types):
    with pytest.raises(ValidationFailed) as info:
        leave.create_request(session, staff, leave_type_id=leave_types["VL"].id, start_date=MON, end_date=MON)
    assert "initialize yearly leave balances" in info.value.message


def test_cross_year_requests_are_rejected(session, staff, balances):
    with pytest.raises(ValidationFailed):
        leave.create_request(
            session,
            staff,
            leave_type_id=balances["VL"].id,
            start_date=dt.date(2026, 12, 30),
            end_date=dt.date(2027, 1, 2),
        )


def test_emergency_leave_draws_from_vacation(session, staff, employee, balances):
    vl, el = balances["VL"], balances["EL"]
    request, _ = leave.create_request(session, staff, leave_type_id=el.id, start_date=MON, end_date=MON)
    assert request.charged_leave_type_id == vl.id
    assert request.is_paid
    assert _balance(session, employee, vl).pending == Decimal("1")


def test_unpaid_leave_reserves_nothing(session, staff, hr, employee, balances):
    request, _ = leave.create_request(session, staff, leave_type_id=balances["LWOP"].id, start_date=MON, end_date=WED)
    assert request.charged_leave_type_id is None
    assert request.is_paid is False
    request, _ = leave.hr_decide(session, hr, request.id, decision="APPROVE")
    assert request.status == "APPROVED"
    assert session.query(LeaveBalanceTransaction).count() == 0


def test_half_day_counts_half_and_pins_end_date(session, staff, balances):
    request, _ = leave.create_request(
        session,
        staff,
        leave_type_id=balances["VL"].id,
        start_date=MON,
        end_date=WED,
        is_half_day=True,
        half_day_period="am",
    )
    assert request.number_of_days == Decimal("0.5")
    assert request.end_date == MON
    assert request.half_day_period == "AM"


def test_credit_balance_adds_days(session, hr, employee, balances):
    vl = balances["VL"]
    bal = leave.credit_balance(session, hr, employee_id=employee.id, leave_type_id=vl.id, year=2026, amount="1.25")
    assert bal.credits_earned == Decimal("1.25")
    assert bal.current_balance == Decimal("16.25")
    assert bal.available_balance == Decimal("16.25")
    assert _ledger(session, bal) == ["CREDIT"]
    with pytest.raises(ValidationFailed):
        leave.credit_balance(session, hr, employee_id=employee.id, leave_type_id=vl.id, year=2026, amount=0)


def test_balances_visibility(session, staff, hr, employee, balances):
    mine = leave.list_balances(session, staff, year=2026)
    assert len(mine) == 2
    assert leave.balance_to_dict(mine[0])["available_balance"] == "15.0000"
    assert len(leave.list_balances(session, hr, year=2026, employee_id=employee.id)) == 2
    with pytest.raises(PermissionDenied):
        leave.list_balances(session, staff, year=2026, employee_id=employee.id + 1)


def test_request_queues(session, staff, supervisor, hr, balances):
    request, _ = leave.create_request(session, staff, leave_type_id=balances["VL"].id, start_date=MON, end_date=MON)
    assert [r.id for r in leave.list_requests(session, supervisor, scope="supervisor")] == [request.id]
    assert [r.id for r in leave.list_requests(session, hr, scope="hr")] == [request.id]
    assert leave.request_to_dict(request)["number_of_days"] == "1.0000"
    with pytest.raises(PermissionDenied):
        leave.list_requests(session, staff, scope="hr")


# --------------------------------------------------------------------------
# Overtime
# --------------------------------------------------------------------------


@pytest.mark.parametrize(
    "start,end,expected",
    [
        ("18:00", "20:30", Decimal("2.50")),
        ("17:00", "18:00", Decimal("1.00")),
        (dt.time(19, 15), dt.time(21, 35), Decimal("2.33")),
        ("20:00", "18:00", Decimal("-2.00")),
    ],
)
def test_overtime_hours(start, end, expected):
    assert overtime.overtime_hours(start, end) == expected


def test_overtime_validation(session, staff):
    with pytest.raises(ValidationFailed) as info:
        overtime.create_request(session, staff, overtime_date=MON, start_time="20:00", end_time="18:00")
    assert info.value.message == "End time must be later than start time."
    with pytest.raises(ValidationFailed) as info:
        overtime.create_request(session, staff, overtime_date=MON, start_time="18:00", end_time="18:45")
    assert info.value.message == "Overtime requests must be at least 1 hour."
    with pytest.raises(ValidationFailed):
        overtime.create_request(session, staff, overtime_date=MON, start_time="6pm", end_time="20:00")


def test_overtime_approval_flow(session, staff, supervisor, hr):
    request, message = overtime.create_request(
        session, staff, overtime_date=MON, start_time="18:00", end_time="20:30", reason="Month-end close"
    )
    assert request.request_number.startswith("OT-")
    assert message == f"Overtime request {request.request_number} submitted."
    assert request.hours == Decimal("2.50")

    _, message = overtime.supervisor_decide(session, supervisor, request.id, decision="APPROVE")
    assert message == "Overtime request approved."
    request, _ = overtime.hr_decide(session, hr, request.id, decision="APPROVE")
    assert request.status == "APPROVED"
    data = overtime.request_to_dict(request)
    assert (data["start_time"], data["end_time"], data["hours"]) == ("18:00", "20:30", "2.50")


def test_overtime_cancel_and_reject(session, staff, supervisor):
    first, _ = overtime.create_request(session, staff, overtime_date=MON, start_time="18:00", end_time="20:00")
    first, _ = overtime.cancel_request(session, staff, first.id)
    assert first.status == "CANCELLED"
    with pytest.raises(NotFound):
        overtime.supervisor_decide(session, supervisor, first.id, decision="REJECT")

    second, _ = overtime.create_request(session, staff, overtime_date=WED, start_time="18:00", end_time="20:00")
    second, message = overtime.supervisor_decide(session, supervisor, second.id, decision="REJECT")
    assert message == "Overtime request rejected."
    assert second.status == "REJECTED"
    assert [r.id for r in overtime.list_requests(session, staff)] == [second.id, first.id]
