from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.services import leave, overtime
from core.services.auth import Actor
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from hris_api.database import get_db
from hris_api.main import current_actor, json_result
from hris_api.schemas import (
    DecisionRequest,
    LeaveCreditRequest,
    LeaveInitializeRequest,
    LeaveRequestCreate,
    OvertimeRequestCreate,
)

router = APIRouter(tags=["leave", "overtime"])

SCOPE_PATTERN = "^(mine|supervisor|hr)$"


# --------------------------------------------------------------------------
# Leave
# --------------------------------------------------------------------------


@router.get("/leave/types")
def leave_types(db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    types = leave.available_leave_types(db, actor.company_id)
    return {
        "ok": True,
        "items": [{"id": t.id, "code": t.code, "name": t.name, "is_paid": t.is_paid} for t in types],
    }


@router.get("/leave/balances")
def leave_balances(
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    employee_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = leave.list_balances(db, actor, year=year or dt.date.today().year, employee_id=employee_id)
    return {"ok": True, "items": [leave.balance_to_dict(b) for b in rows]}


@router.post("/leave/balances/credit")
def credit_balance(payload: LeaveCreditRequest, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    balance = leave.credit_balance(db, actor, **payload.model_dump())
    return {"ok": True, "balance": leave.balance_to_dict(balance)}


@router.post("/leave/balances/initialize")
def initialize_balances(
    payload: LeaveInitializeRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        stats = leave.initialize_balances(db, actor, year=payload.year, credits=payload.credits)
        return {"ok": True, **stats}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.post("/leave/requests")
def create_leave_request(
    payload: LeaveRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = leave.create_request(db, actor, **payload.model_dump())
        return {"ok": True, "message": message, "request": leave.request_to_dict(row)}, 201

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.get("/leave/requests")
def list_leave_requests(
    scope: str = Query("mine", pattern=SCOPE_PATTERN),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = leave.list_requests(db, actor, scope=scope, status=status)
    return {"ok": True, "items": [leave.request_to_dict(r) for r in rows]}


@router.post("/leave/requests/{request_id}/cancel")
def cancel_leave_request(request_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    row, message = leave.cancel_request(db, actor, request_id)
    return {"ok": True, "message": message, "request": leave.request_to_dict(row)}


@router.post("/leave/requests/{request_id}/supervisor-decision")
def supervisor_decide_leave(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    row, message = leave.supervisor_decide(db, actor, request_id, decision=payload.decision, remarks=payload.remarks)
    return {"ok": True, "message": message, "request": leave.request_to_dict(row)}


@router.post("/leave/requests/{request_id}/hr-decision")
def hr_decide_leave(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    row, message = leave.hr_decide(db, actor, request_id, decision=payload.decision, remarks=payload.remarks)
    return {"ok": True, "message": message, "request": leave.request_to_dict(row)}


# --------------------------------------------------------------------------
# Overtime
# --------------------------------------------------------------------------


@router.post("/overtime/requests")
def create_overtime_request(
    payload: OvertimeRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = overtime.create_request(db, actor, **payload.model_dump())
        return {"ok": True, "message": message, "request": overtime.request_to_dict(row)}, 201

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.get("/overtime/requests")
def list_overtime_requests(
    scope: str = Query("mine", pattern=SCOPE_PATTERN),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = overtime.list_requests(db, actor, scope=scope, status=status)
    return {"ok": True, "items": [overtime.request_to_dict(r) for r in rows]}


@router.post("/overtime/requests/{request_id}/cancel")
def cancel_overtime_request(request_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    row, message = overtime.cancel_request(db, actor, request_id)
    return {"ok": True, "message": message, "request": overtime.request_to_dict(row)}


@router.post("/overtime/requests/{request_id}/supervisor-decision")
def supervisor_decide_overtime(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    row, message = overtime.supervisor_decide(db, actor, request_id, decision=payload.decision, remarks=payload.remarks)
    return {"ok": True, "message": message, "request": overtime.request_to_dict(row)}


@router.post("/overtime/requests/{request_id}/hr-decision")
def hr_decide_overtime(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    row, message = overtime.hr_decide(db, actor, request_id, decision=payload.decision, remarks=payload.remarks)
    return {"ok": True, "message": message, "request": overtime.request_to_dict(row)}
