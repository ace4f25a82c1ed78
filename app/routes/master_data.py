from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.services import master_data
from core.services.auth import Actor
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from hris_api.database import get_db
from hris_api.main import json_result, require_hr
from hris_api.schemas import (
    EmployeeCreateRequest,
    HolidayCreateRequest,
    LoanCreateRequest,
    RecurringDeductionCreateRequest,
    RecurringEarningCreateRequest,
    TimeRecordsRequest,
)

router = APIRouter(tags=["master-data"])


def _idempotent(db: Session, request: Request, actor: Actor, payload, produce):
    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=produce
    )
    return json_result(content, status)


# --------------------------------------------------------------------------
# Employees
# --------------------------------------------------------------------------


@router.get("/employees")
def list_employees(
    department_id: Optional[int] = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    rows = master_data.list_employees(db, actor, department_id=department_id, include_inactive=include_inactive)
    return {"ok": True, "items": [master_data.employee_to_dict(e) for e in rows]}


@router.post("/employees")
def create_employee(
    payload: EmployeeCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        employee = master_data.create_employee(db, actor, **payload.model_dump())
        return {"ok": True, "employee": master_data.employee_to_dict(employee)}, 201

    return _idempotent(db, request, actor, payload, _produce)


# --------------------------------------------------------------------------
# Daily time records
# --------------------------------------------------------------------------


@router.get("/employees/{employee_id}/time-records")
def list_time_records(
    employee_id: int,
    start: Optional[dt.date] = Query(default=None),
    end: Optional[dt.date] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    rows = master_data.list_time_records(db, actor, employee_id, start=start, end=end)
    return {"ok": True, "items": [master_data.time_record_to_dict(r) for r in rows]}


@router.post("/employees/{employee_id}/time-records")
def upsert_time_records(
    employee_id: int,
    payload: TimeRecordsRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        rows, message = master_data.upsert_time_records(
            db, actor, employee_id, [r.model_dump() for r in payload.records]
        )
        return {"ok": True, "message": message, "items": [master_data.time_record_to_dict(r) for r in rows]}, 200

    return _idempotent(db, request, actor, payload, _produce)


# --------------------------------------------------------------------------
# Holidays
# --------------------------------------------------------------------------


@router.get("/holidays")
def list_holidays(
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    rows = master_data.list_holidays(db, actor, year=year)
    return {"ok": True, "items": [master_data.holiday_to_dict(h) for h in rows]}


@router.post("/holidays")
def create_holiday(
    payload: HolidayCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        holiday = master_data.create_holiday(db, actor, **payload.model_dump())
        return {"ok": True, "holiday": master_data.holiday_to_dict(holiday)}, 201

    return _idempotent(db, request, actor, payload, _produce)


# --------------------------------------------------------------------------
# Loans
# --------------------------------------------------------------------------


@router.get("/loans")
def list_loans(
    employee_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None, pattern="^(ACTIVE|FULLY_PAID)$"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    rows = master_data.list_loans(db, actor, employee_id=employee_id, status=status)
    return {"ok": True, "items": [master_data.loan_to_dict(loan) for loan in rows]}


@router.post("/loans")
def create_loan(
    payload: LoanCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        loan = master_data.create_loan(db, actor, **payload.model_dump())
        return {"ok": True, "loan": master_data.loan_to_dict(loan)}, 201

    return _idempotent(db, request, actor, payload, _produce)


# --------------------------------------------------------------------------
# Recurring earnings and deductions
# --------------------------------------------------------------------------


@router.get("/employees/{employee_id}/recurring")
def list_recurring(employee_id: int, db: Session = Depends(get_db), actor: Actor = Depends(require_hr)):
    earnings, deductions = master_data.list_recurring_items(db, actor, employee_id)
    return {
        "ok": True,
        "earnings": [master_data.recurring_earning_to_dict(e) for e in earnings],
        "deductions": [master_data.recurring_deduction_to_dict(d) for d in deductions],
    }


@router.post("/employees/{employee_id}/recurring-earnings")
def create_recurring_earning(
    employee_id: int,
    payload: RecurringEarningCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        item = master_data.create_recurring_earning(db, actor, employee_id=employee_id, **payload.model_dump())
        return {"ok": True, "earning": master_data.recurring_earning_to_dict(item)}, 201

    return _idempotent(db, request, actor, payload, _produce)


@router.post("/employees/{employee_id}/recurring-deductions")
def create_recurring_deduction(
    employee_id: int,
    payload: RecurringDeductionCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        item = master_data.create_recurring_deduction(db, actor, employee_id=employee_id, **payload.model_dump())
        return {"ok": True, "deduction": master_data.recurring_deduction_to_dict(item)}, 201

    return _idempotent(db, request, actor, payload, _produce)
