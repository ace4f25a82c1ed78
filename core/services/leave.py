"""Leave requests and the per-year leave balance ledger.

Paid leave reserves days from the balance when filed, releases them on
cancel or rejection, and consumes them on final HR approval. Every balance
change writes a ``LeaveBalanceTransaction`` with the before/after available
figures.
"""
from __future__ import annotations

import datetime as dt
import logging
import random
import re
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Type
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import Base, Employee, LeaveBalance, LeaveBalanceTransaction, LeaveRequest, LeaveType, utc_now
from core.repositories import employees as employees_repo
from core.settings import get_settings
from core.utils.dates import inclusive_days

from .audit import record_event
from .auth import Actor
from .calculation import ZERO, round_quantity, to_decimal

logger = logging.getLogger("hris_core.leave")

EMERGENCY_LEAVE_NAMES = frozenset({"EMERGENCY LEAVE"})
EMERGENCY_LEAVE_CODES = frozenset({"EL", "EMERGENCY_LEAVE", "EMERGENCYLEAVE", "EMERGENCY"})
VACATION_LEAVE_NAMES = frozenset({"VACATION LEAVE"})
VACATION_LEAVE_CODES = frozenset({"VL", "VACATION_LEAVE", "VACATIONLEAVE", "VACATION"})
DECISIONS = ("APPROVE", "REJECT")
NUMBER_ATTEMPTS = 5


# --------------------------------------------------------------------------
# Shared request helpers (also used by overtime)
# --------------------------------------------------------------------------


def request_number(session: Session, model: Type[Base], prefix: str, *, now: Optional[dt.datetime] = None) -> str:
    """``{prefix}-YYYYMMDD-NNNNNN`` with a random suffix, checked for collisions."""
    tz = ZoneInfo(get_settings().payroll_timezone)
    stamp = (now or dt.datetime.now(tz)).astimezone(tz).strftime("%Y%m%d")
    for _ in range(NUMBER_ATTEMPTS):
        candidate = f"{prefix}-{stamp}-{random.randint(0, 999_999):06d}"
        exists = session.query(model.id).filter(model.request_number == candidate).first()
        if exists is None:
            return candidate
    raise Conflict("REQUEST_NUMBER_GENERATION_FAILED")


def actor_employee(session: Session, actor: Actor) -> Employee:
    employee = employees_repo.employee_for_user(session, actor.company_id, actor.employee_id)
    if employee is None:
        raise ValidationFailed("Employee profile not found for the active company.")
    return employee


def normalize_decision(decision: str) -> str:
    value = (decision or "").strip().upper()
    if value not in DECISIONS:
        raise ValidationFailed("Decision must be APPROVE or REJECT.")
    return value


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


# --------------------------------------------------------------------------
# Leave type resolution
# --------------------------------------------------------------------------


def _norm_name(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip().upper())


def _norm_code(value: str) -> str:
    return re.sub(r"[\s-]+", "_", (value or "").strip().upper())


def is_emergency_leave(leave_type: LeaveType) -> bool:
    return _norm_name(leave_type.name) in EMERGENCY_LEAVE_NAMES or _norm_code(leave_type.code) in EMERGENCY_LEAVE_CODES


def is_vacation_leave(leave_type: LeaveType) -> bool:
    return _norm_name(leave_type.name) in VACATION_LEAVE_NAMES or _norm_code(leave_type.code) in VACATION_LEAVE_CODES


def available_leave_types(session: Session, company_id: int) -> list[LeaveType]:
    return (
        session.query(LeaveType)
        .filter(LeaveType.is_active.is_(True), or_(LeaveType.company_id == company_id, LeaveType.company_id.is_(None)))
        .order_by(LeaveType.id.asc())
        .all()
    )


def charged_leave_type(leave_type: LeaveType, company_id: int, candidates: Iterable[LeaveType]) -> Optional[LeaveType]:
    """Balance a filing draws from: itself, Vacation Leave for EL, or none when unpaid."""
    if is_emergency_leave(leave_type):
        vacation = [t for t in candidates if is_vacation_leave(t)]
        chosen = next((t for t in vacation if t.company_id == company_id), None)
        chosen = chosen or next((t for t in vacation if t.company_id is None), None)
        if chosen is None:
            raise ValidationFailed("Emergency Leave requires a configured Vacation Leave type in the company settings.")
        return chosen
    if not leave_type.is_paid:
        return None
    return leave_type


# --------------------------------------------------------------------------
# Balance ledger
# --------------------------------------------------------------------------


def _balance(session: Session, employee_id: int, leave_type_id: int, year: int) -> Optional[LeaveBalance]:
    return (
        session.query(LeaveBalance)
        .filter(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.leave_type_id == leave_type_id,
            LeaveBalance.year == year,
        )
        .with_for_update()
        .first()
    )


def _ledger(
    session: Session,
    balance: LeaveBalance,
    kind: str,
    amount: Decimal,
    before: Decimal,
    *,
    reference_id: Optional[int],
    remarks: str,
    reference_type: str = "LEAVE_REQUEST",
) -> None:
    session.add(
        LeaveBalanceTransaction(
            leave_balance_id=balance.id,
            transaction_type=kind,
            amount=round_quantity(amount),
            available_before=round_quantity(before),
            available_after=round_quantity(balance.available_balance),
            reference_type=reference_type,
            reference_id=reference_id,
            remarks=remarks[:255],
        )
    )


def reserve_balance(session: Session, request: LeaveRequest, leave_type_id: int) -> None:
    year = request.start_date.year
    balance = _balance(session, request.employee_id, leave_type_id, year)
    if balance is None:
        raise ValidationFailed(f"No leave balance found for {year}. Please initialize yearly leave balances first.")
    days = to_decimal(request.number_of_days)
    before = to_decimal(balance.available_balance)
    if before < days:
        raise ValidationFailed("Insufficient leave balance for this request.")
    balance.pending = round_quantity(to_decimal(balance.pending) + days)
    balance.available_balance = round_quantity(before - days)
    _ledger(
        session,
        balance,
        "RESERVATION",
        -days,
        before,
        reference_id=request.id,
        remarks=f"Reserved {days:.2f} day(s) for leave request {request.request_number}",
    )


def release_balance(session: Session, request: LeaveRequest, leave_type_id: int) -> None:
    year = request.start_date.year
    balance = _balance(session, request.employee_id, leave_type_id, year)
    if balance is None:
        raise ValidationFailed(f"No leave balance found for {year}.")
    days = to_decimal(request.number_of_days)
    if to_decimal(balance.pending) < days:
        raise ValidationFailed(
            "Leave balance reservation is inconsistent. Pending requests are lower than the request duration."
        )
    before = to_decimal(balance.available_balance)
    balance.pending = round_quantity(to_decimal(balance.pending) - days)
    balance.available_balance = round_quantity(before + days)
    _ledger(
        session,
        balance,
        "RELEASE",
        days,
        before,
        reference_id=request.id,
        remarks=f"Released {days:.2f} day(s) back to available balance for {request.request_number}",
    )


def consume_balance(session: Session, request: LeaveRequest, leave_type_id: int) -> None:
    year = request.start_date.year
    balance = _balance(session, request.employee_id, leave_type_id, year)
    if balance is None:
        raise ValidationFailed(f"No leave balance found for {year}.")
    days = to_decimal(request.number_of_days)
    pending = to_decimal(balance.pending)
    current = to_decimal(balance.current_balance)
    if pending < days:
        raise ValidationFailed(
            "Leave balance reservation is inconsistent. Pending requests are lower than the request duration."
        )
    if current < days:
        raise ValidationFailed("Leave balance is insufficient to finalize this approval.")
    before = to_decimal(balance.available_balance)
    balance.current_balance = round_quantity(current - days)
    balance.pending = round_quantity(pending - days)
    balance.used = round_quantity(to_decimal(balance.used) + days)
    available = round_quantity(balance.current_balance - balance.pending)
    if available < ZERO:
        raise ValidationFailed("Leave balance computation failed. Available balance cannot be negative.")
    balance.available_balance = available
    _ledger(
        session,
        balance,
        "USAGE",
        days,
        before,
        reference_id=request.id,
        remarks=f"Consumed {days:.2f} day(s) for approved leave request {request.request_number}",
    )


def credit_balance(
    session: Session,
    actor: Actor,
    *,
    employee_id: int,
    leave_type_id: int,
    year: int,
    amount: Any,
    remarks: str = "",
) -> LeaveBalance:
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to leave policy settings.")
    days = to_decimal(amount)
    if days <= ZERO:
        raise ValidationFailed("Credit amount must be greater than zero.")
    if employees_repo.get_employee(session, actor.company_id, int(employee_id)) is None:
        raise NotFound("Employee not found.")
    balance = _balance(session, int(employee_id), int(leave_type_id), int(year))
    if balance is None:
        raise ValidationFailed(f"No leave balance found for {year}. Please initialize yearly leave balances first.")
    before = to_decimal(balance.available_balance)
    balance.credits_earned = round_quantity(to_decimal(balance.credits_earned) + days)
    balance.current_balance = round_quantity(to_decimal(balance.current_balance) + days)
    balance.available_balance = round_quantity(before + days)
    _ledger(
        session,
        balance,
        "CREDIT",
        days,
        before,
        reference_id=None,
        reference_type="MANUAL",
        remarks=_clean(remarks) or f"Credited {days:.2f} day(s)",
    )
    session.commit()
    record_event(
        session,
        actor=actor.label,
        action="CREDIT_LEAVE_BALANCE",
        resource=f"leave_balance:{balance.id}",
        company_id=actor.company_id,
        meta={"days": str(days), "year": year},
    )
    return balance


def initialize_balances(
    session: Session,
    actor: Actor,
    *,
    year: int,
    credits: Mapping[str, Any],
) -> dict[str, Any]:
    """Create missing balance rows for ``year``.

    ``credits`` maps leave type code to the opening credit; types without an
    entry are skipped. Existing rows are left untouched.
    """
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to leave policy settings.")
    year = int(year)
    first, last = dt.date(year, 1, 1), dt.date(year, 12, 31)
    employees = (
        session.query(Employee)
        .filter(
            Employee.company_id == actor.company_id,
            Employee.is_active.is_(True),
            Employee.hire_date <= last,
            or_(Employee.separation_date.is_(None), Employee.separation_date >= first),
        )
        .all()
    )
    stats = {"employees_considered": len(employees), "balances_created": 0, "skipped_existing": 0, "skipped_no_policy": 0}
    if not employees:
        return {**stats, "message": f"No eligible employees found for {year}."}
    types = [t for t in available_leave_types(session, actor.company_id) if t.is_paid]
    if not types:
        return {**stats, "message": "No active leave types found for this company."}
    by_code = {_norm_code(k): to_decimal(v) for k, v in (credits or {}).items()}

    existing = {
        (b.employee_id, b.leave_type_id)
        for b in session.query(LeaveBalance)
        .filter(LeaveBalance.year == year, LeaveBalance.employee_id.in_([e.id for e in employees]))
        .all()
    }
    for employee in employees:
        for leave_type in types:
            opening = by_code.get(_norm_code(leave_type.code))
            if opening is None:
                stats["skipped_no_policy"] += 1
                continue
            if (employee.id, leave_type.id) in existing:
                stats["skipped_existing"] += 1
                continue
            opening = round_quantity(opening)
            session.add(
                LeaveBalance(
                    employee_id=employee.id,
                    leave_type_id=leave_type.id,
                    year=year,
                    opening_balance=opening,
                    credits_earned=ZERO,
                    used=ZERO,
                    pending=ZERO,
                    current_balance=opening,
                    available_balance=opening,
                )
            )
            stats["balances_created"] += 1
    session.commit()
    record_event(
        session,
        actor=actor.label,
        action="INITIALIZE_LEAVE_BALANCES",
        resource=f"company:{actor.company_id}",
        company_id=actor.company_id,
        meta={"year": year, **stats},
    )
    return {**stats, "message": f"Initialized {stats['balances_created']} leave balance row(s) for {year}."}


# --------------------------------------------------------------------------
# Requests
# --------------------------------------------------------------------------


def leave_days(start: dt.date, end: dt.date, *, is_half_day: bool) -> Decimal:
    if is_half_day:
        return Decimal("0.5")
    return Decimal(inclusive_days(start, end))


def create_request(
    session: Session,
    actor: Actor,
    *,
    leave_type_id: int,
    start_date: dt.date,
    end_date: dt.date,
    is_half_day: bool = False,
    half_day_period: Optional[str] = None,
    reason: str = "",
) -> tuple[LeaveRequest, str]:
    employee = actor_employee(session, actor)
    candidates = available_leave_types(session, actor.company_id)
    leave_type = next((t for t in candidates if t.id == int(leave_type_id)), None)
    if leave_type is None:
        raise ValidationFailed("Leave type is not available for this company.")
    if is_half_day:
        end_date = start_date
    days = leave_days(start_date, end_date, is_half_day=is_half_day)
    if days <= ZERO:
        raise ValidationFailed("Invalid leave duration.")
    if start_date.year != end_date.year:
        raise ValidationFailed(
            "Cross-year leave requests are not supported yet. Please submit separate requests per year."
        )
    charged = charged_leave_type(leave_type, actor.company_id, candidates)

    request = LeaveRequest(
        company_id=actor.company_id,
        employee_id=employee.id,
        leave_type_id=leave_type.id,
        charged_leave_type_id=charged.id if charged else None,
        request_number=request_number(session, LeaveRequest, "LR"),
        start_date=start_date,
        end_date=end_date,
        is_half_day=bool(is_half_day),
        half_day_period=((half_day_period or "").upper() or None) if is_half_day else None,
        number_of_days=days,
        is_paid=charged is not None,
        reason=_clean(reason),
        status="PENDING",
        submitted_at=utc_now(),
        supervisor_user_id=employee.supervisor_user_id,
    )
    session.add(request)
    try:
        session.flush()
        if charged is not None:
            reserve_balance(session, request, charged.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    record_event(
        session,
        actor=actor.label,
        action="SUBMIT_LEAVE_REQUEST",
        resource=f"leave_request:{request.id}",
        company_id=actor.company_id,
        meta={"request_number": request.request_number, "days": str(days)},
    )
    return request, f"Leave request {request.request_number} submitted."


def _locked_request(session: Session, company_id: int, request_id: int) -> Optional[LeaveRequest]:
    return (
        session.query(LeaveRequest)
        .filter(LeaveRequest.id == int(request_id), LeaveRequest.company_id == company_id)
        .with_for_update()
        .first()
    )


def _finish(session: Session, actor: Actor, request: LeaveRequest, action: str, **meta: Any) -> None:
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    record_event(
        session,
        actor=actor.label,
        action=action,
        resource=f"leave_request:{request.id}",
        company_id=actor.company_id,
        meta={"request_number": request.request_number, "status": request.status, **meta},
    )


def cancel_request(session: Session, actor: Actor, request_id: int) -> tuple[LeaveRequest, str]:
    employee = actor_employee(session, actor)
    request = _locked_request(session, actor.company_id, request_id)
    if request is None or request.employee_id != employee.id:
        raise NotFound("Leave request not found.")
    if request.status != "PENDING":
        raise ValidationFailed("Only pending leave requests can be cancelled.")
    try:
        if request.charged_leave_type_id:
            release_balance(session, request, request.charged_leave_type_id)
    except ValidationFailed:
        session.rollback()
        raise
    request.status = "CANCELLED"
    request.cancelled_at = utc_now()
    _finish(session, actor, request, "CANCEL_LEAVE_REQUEST")
    return request, f"Leave request {request.request_number} cancelled."


def supervisor_decide(
    session: Session, actor: Actor, request_id: int, *, decision: str, remarks: str = ""
) -> tuple[LeaveRequest, str]:
    decision = normalize_decision(decision)
    request = _locked_request(session, actor.company_id, request_id)
    if request is None or request.status != "PENDING" or request.supervisor_user_id != actor.user_id:
        raise NotFound("Leave request not found or no longer pending.")
    now = utc_now()
    request.supervisor_acted_at = now
    request.supervisor_remarks = _clean(remarks)[:255]
    if decision == "APPROVE":
        request.status = "SUPERVISOR_APPROVED"
    else:
        try:
            if request.charged_leave_type_id:
                release_balance(session, request, request.charged_leave_type_id)
        except ValidationFailed:
            session.rollback()
            raise
        request.status = "REJECTED"
        request.rejected_at = now
    _finish(session, actor, request, "SUPERVISOR_DECIDE_LEAVE_REQUEST", decision=decision)
    return request, "Leave request approved." if decision == "APPROVE" else "Leave request rejected."


def hr_decide(
    session: Session, actor: Actor, request_id: int, *, decision: str, remarks: str = ""
) -> tuple[LeaveRequest, str]:
    decision = normalize_decision(decision)
    if not actor.is_hr:
        verb = "approve" if decision == "APPROVE" else "reject"
        raise PermissionDenied(f"Only HR or admins can {verb} this request.")
    request = _locked_request(session, actor.company_id, request_id)
    if request is None or request.status not in ("PENDING", "SUPERVISOR_APPROVED"):
        raise NotFound("Leave request not found or no longer eligible.")
    now = utc_now()
    try:
        if request.charged_leave_type_id:
            if decision == "APPROVE":
                consume_balance(session, request, request.charged_leave_type_id)
            else:
                release_balance(session, request, request.charged_leave_type_id)
    except ValidationFailed:
        session.rollback()
        raise
    request.hr_user_id = actor.user_id
    request.hr_acted_at = now
    request.hr_remarks = _clean(remarks)[:255]
    if decision == "APPROVE":
        request.status = "APPROVED"
        request.approved_at = now
    else:
        request.status = "REJECTED"
        request.rejected_at = now
    _finish(session, actor, request, "HR_DECIDE_LEAVE_REQUEST", decision=decision)
    logger.info("leave request decided", extra={"request_id": request.id, "decision": decision})
    return request, "Leave request approved." if decision == "APPROVE" else "Leave request rejected."


def list_requests(session: Session, actor: Actor, *, scope: str = "mine", status: Optional[str] = None) -> list[LeaveRequest]:
    """``mine``, ``supervisor`` (pending on the caller) or ``hr`` (awaiting HR)."""
    q = (
        session.query(LeaveRequest)
        .options(joinedload(LeaveRequest.leave_type))
        .filter(LeaveRequest.company_id == actor.company_id)
    )
    if scope == "mine":
        q = q.filter(LeaveRequest.employee_id == actor_employee(session, actor).id)
    elif scope == "supervisor":
        q = q.filter(LeaveRequest.supervisor_user_id == actor.user_id, LeaveRequest.status == "PENDING")
    elif scope == "hr":
        if not actor.is_hr:
            raise PermissionDenied("Only HR or admins can access this queue.")
        q = q.filter(LeaveRequest.status.in_(("PENDING", "SUPERVISOR_APPROVED")))
    else:
        raise ValidationFailed(f"Unknown scope: {scope}.")
    if status:
        q = q.filter(LeaveRequest.status == status)
    return q.order_by(LeaveRequest.submitted_at.desc(), LeaveRequest.id.desc()).limit(200).all()


def request_to_dict(request: LeaveRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "request_number": request.request_number,
        "employee_id": request.employee_id,
        "leave_type_id": request.leave_type_id,
        "charged_leave_type_id": request.charged_leave_type_id,
        "start_date": request.start_date.isoformat(),
        "end_date": request.end_date.isoformat(),
        "is_half_day": request.is_half_day,
        "half_day_period": request.half_day_period,
        "number_of_days": str(request.number_of_days),
        "is_paid": request.is_paid,
        "status": request.status,
        "reason": request.reason,
        "submitted_at": request.submitted_at.isoformat() if request.submitted_at else None,
    }


def balance_to_dict(balance: LeaveBalance) -> dict[str, Any]:
    return {
        "id": balance.id,
        "employee_id": balance.employee_id,
        "leave_type_id": balance.leave_type_id,
        "year": balance.year,
        "opening_balance": str(balance.opening_balance),
        "credits_earned": str(balance.credits_earned),
        "used": str(balance.used),
        "pending": str(balance.pending),
        "current_balance": str(balance.current_balance),
        "available_balance": str(balance.available_balance),
    }


def list_balances(session: Session, actor: Actor, *, year: int, employee_id: Optional[int] = None) -> list[LeaveBalance]:
    """The caller's own balances, or any employee's when the caller is HR."""
    if employee_id is None:
        employee_id = actor_employee(session, actor).id
    elif int(employee_id) != actor.employee_id and not actor.is_hr:
        raise PermissionDenied("You can only view your own leave balances.")
    return (
        session.query(LeaveBalance)
        .join(Employee, Employee.id == LeaveBalance.employee_id)
        .filter(
            Employee.company_id == actor.company_id,
            LeaveBalance.employee_id == int(employee_id),
            LeaveBalance.year == int(year),
        )
        .order_by(LeaveBalance.leave_type_id)
        .all()
    )
