from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from core.errors import NotFound, PermissionDenied, ValidationFailed
from core.models import OvertimeRequest, utc_now
from core.settings import get_settings

from .audit import record_event
from .auth import Actor
from .calculation import round_currency
from .leave import actor_employee, normalize_decision, request_number

logger = logging.getLogger("hris_core.overtime")

MIN_OVERTIME_HOURS = Decimal("1")

TimeLike = Union[dt.time, str]


def parse_clock(value: TimeLike) -> dt.time:
    if isinstance(value, dt.time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    try:
        hour, minute = (int(part) for part in str(value).strip().split(":")[:2])
        return dt.time(hour, minute)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("Time must be in HH:MM format.") from exc


def overtime_hours(start: TimeLike, end: TimeLike) -> Decimal:
    """Clock difference in hours, 2 dp. Same-day only; negative when end precedes start."""
    s, e = parse_clock(start), parse_clock(end)
    minutes = (e.hour * 60 + e.minute) - (s.hour * 60 + s.minute)
    return round_currency(Decimal(minutes) / Decimal(60))


def _stamp(day: dt.date, clock: dt.time) -> dt.datetime:
    return dt.datetime.combine(day, clock, tzinfo=ZoneInfo(get_settings().payroll_timezone))


def create_request(
    session: Session,
    actor: Actor,
    *,
    overtime_date: dt.date,
    start_time: TimeLike,
    end_time: TimeLike,
    reason: str = "",
) -> tuple[OvertimeRequest, str]:
    employee = actor_employee(session, actor)
    hours = overtime_hours(start_time, end_time)
    if hours <= 0:
        raise ValidationFailed("End time must be later than start time.")
    if hours < MIN_OVERTIME_HOURS:
        raise ValidationFailed("Overtime requests must be at least 1 hour.")
    if not isinstance(overtime_date, dt.date):
        raise ValidationFailed("Overtime date is invalid.")

    request = OvertimeRequest(
        company_id=actor.company_id,
        employee_id=employee.id,
        request_number=request_number(session, OvertimeRequest, "OT"),
        overtime_date=overtime_date,
        start_time=_stamp(overtime_date, parse_clock(start_time)),
        end_time=_stamp(overtime_date, parse_clock(end_time)),
        hours=hours,
        reason=(reason or "").strip(),
        status="PENDING",
        submitted_at=utc_now(),
        supervisor_user_id=employee.supervisor_user_id,
    )
    session.add(request)
    session.commit()
    _audit(session, actor, request, "SUBMIT_OVERTIME_REQUEST", hours=str(hours))
    return request, f"Overtime request {request.request_number} submitted."


def _audit(session: Session, actor: Actor, request: OvertimeRequest, action: str, **meta: Any) -> None:
    record_event(
        session,
        actor=actor.label,
        action=action,
        resource=f"overtime_request:{request.id}",
        company_id=actor.company_id,
        meta={"request_number": request.request_number, "status": request.status, **meta},
    )


def _locked(session: Session, company_id: int, request_id: int) -> Optional[OvertimeRequest]:
    return (
        session.query(OvertimeRequest)
        .filter(OvertimeRequest.id == int(request_id), OvertimeRequest.company_id == company_id)
        .with_for_update()
        .first()
    )


def cancel_request(session: Session, actor: Actor, request_id: int) -> tuple[OvertimeRequest, str]:
    employee = actor_employee(session, actor)
    request = _locked(session, actor.company_id, request_id)
    if request is None or request.employee_id != employee.id:
        raise NotFound("Overtime request not found.")
    if request.status != "PENDING":
        raise ValidationFailed("Only pending overtime requests can be cancelled.")
    request.status = "CANCELLED"
    request.cancelled_at = utc_now()
    session.commit()
    _audit(session, actor, request, "CANCEL_OVERTIME_REQUEST")
    return request, f"Overtime request {request.request_number} cancelled."


def supervisor_decide(
    session: Session, actor: Actor, request_id: int, *, decision: str, remarks: str = ""
) -> tuple[OvertimeRequest, str]:
    decision = normalize_decision(decision)
    request = _locked(session, actor.company_id, request_id)
    if request is None or request.status != "PENDING" or request.supervisor_user_id != actor.user_id:
        raise NotFound("Overtime request not found or no longer pending.")
    now = utc_now()
    request.supervisor_acted_at = now
    request.supervisor_remarks = (remarks or "").strip()[:255]
    if decision == "APPROVE":
        request.status = "SUPERVISOR_APPROVED"
    else:
        request.status = "REJECTED"
        request.rejected_at = now
    session.commit()
    _audit(session, actor, request, "SUPERVISOR_DECIDE_OVERTIME_REQUEST", decision=decision)
    return request, "Overtime request approved." if decision == "APPROVE" else "Overtime request rejected."


def hr_decide(
    session: Session, actor: Actor, request_id: int, *, decision: str, remarks: str = ""
) -> tuple[OvertimeRequest, str]:
    decision = normalize_decision(decision)
    if not actor.is_hr:
        verb = "approve" if decision == "APPROVE" else "reject"
        raise PermissionDenied(f"Only HR or admins can {verb} this request.")
    request = _locked(session, actor.company_id, request_id)
    if request is None or request.status not in ("PENDING", "SUPERVISOR_APPROVED"):
        raise NotFound("Overtime request not found or no longer eligible.")
    now = utc_now()
    request.hr_user_id = actor.user_id
    request.hr_acted_at = now
    request.hr_remarks = (remarks or "").strip()[:255]
    if decision == "APPROVE":
        request.status = "APPROVED"
        request.approved_at = now
    else:
        request.status = "REJECTED"
        request.rejected_at = now
    session.commit()
    _audit(session, actor, request, "HR_DECIDE_OVERTIME_REQUEST", decision=decision)
    logger.info("overtime request decided", extra={"request_id": request.id, "decision": decision})
    return request, "Overtime request approved." if decision == "APPROVE" else "Overtime request rejected."


def list_requests(session: Session, actor: Actor, *, scope: str = "mine", status: Optional[str] = None) -> list[OvertimeRequest]:
    q = session.query(OvertimeRequest).filter(OvertimeRequest.company_id == actor.company_id)
    if scope == "mine":
        q = q.filter(OvertimeRequest.employee_id == actor_employee(session, actor).id)
    elif scope == "supervisor":
        q = q.filter(OvertimeRequest.supervisor_user_id == actor.user_id, OvertimeRequest.status == "PENDING")
    elif scope == "hr":
        if not actor.is_hr:
            raise PermissionDenied("Only HR or admins can access this queue.")
        q = q.filter(OvertimeRequest.status.in_(("PENDING", "SUPERVISOR_APPROVED")))
    else:
        raise ValidationFailed(f"Unknown scope: {scope}.")
    if status:
        q = q.filter(OvertimeRequest.status == status)
    return q.order_by(OvertimeRequest.submitted_at.desc(), OvertimeRequest.id.desc()).limit(200).all()


def request_to_dict(request: OvertimeRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "request_number": request.request_number,
        "employee_id": request.employee_id,
        "overtime_date": request.overtime_date.isoformat(),
        "start_time": request.start_time.strftime("%H:%M"),
        "end_time": request.end_time.strftime("%H:%M"),
        "hours": str(request.hours),
        "status": request.status,
        "reason": request.reason,
    }
