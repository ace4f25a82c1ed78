from __future__ import annotations

import io
from decimal import Decimal
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from core.exporter import register_workbook
from core.services import pay_periods, payroll_runs, reporting
from core.services.audit import record_event
from core.services.auth import Actor
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from hris_api.database import get_db
from hris_api.main import client_meta, current_actor, json_result
from hris_api.schemas import AdjustmentRequest, PayPeriodCreateRequest, PayrollRunCreateRequest, PayrollRunListResponse

router = APIRouter(prefix="/payroll", tags=["payroll"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# --------------------------------------------------------------------------
# Pay periods
# --------------------------------------------------------------------------


@router.post("/pay-periods")
def create_pay_period(
    payload: PayPeriodCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        period = pay_periods.create_pay_period(db, actor, **payload.model_dump())
        return {"ok": True, "pay_period": pay_periods.pay_period_to_dict(period)}, 201

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.get("/pay-periods")
def list_pay_periods(
    year: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None, pattern="^(OPEN|LOCKED)$"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    periods = pay_periods.list_pay_periods(db, actor, year=year, status=status)
    return {"ok": True, "items": [pay_periods.pay_period_to_dict(p) for p in periods]}


# --------------------------------------------------------------------------
# Runs
# --------------------------------------------------------------------------


@router.post("/runs")
def create_run(
    payload: PayrollRunCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        run, message = payroll_runs.create_run(
            db,
            actor,
            pay_period_id=payload.pay_period_id,
            run_type=payload.run_type,
            department_ids=payload.department_ids,
            employee_ids=payload.employee_ids,
        )
        return {"ok": True, "message": message, "run": payroll_runs.run_detail(run)}, 201

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.get("/runs", response_model=PayrollRunListResponse)
def list_runs(
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    runs, next_cursor = payroll_runs.list_runs(db, actor, limit=limit, cursor=cursor, status=status)
    return PayrollRunListResponse(
        items=[payroll_runs.run_summary(r) for r in runs],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
    )


@router.get("/runs/{run_id}")
def get_run(run_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    run = payroll_runs.get_run(db, actor, run_id)
    return {"ok": True, "run": payroll_runs.run_detail(run)}


def _run_action(
    db: Session,
    request: Request,
    actor: Actor,
    run_id: int,
    operation: Callable[[Session, Actor, int], str],
):
    def _produce():
        message = operation(db, actor, run_id)
        run = payroll_runs.get_run(db, actor, run_id)
        return {"ok": True, "message": message, "run": payroll_runs.run_detail(run)}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash({"run_id": run_id}), produce=_produce
    )
    return json_result(content, status)


@router.post("/runs/{run_id}/validate")
def validate_run(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.validate_run)


@router.post("/runs/{run_id}/proceed-to-calculate")
def proceed_to_calculate(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.proceed_to_calculate)


@router.post("/runs/{run_id}/calculate")
def calculate_run(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.calculate_run)


@router.post("/runs/{run_id}/proceed-to-review")
def proceed_to_review(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.proceed_to_review)


@router.post("/runs/{run_id}/complete-review")
def complete_review(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.complete_review)


@router.post("/runs/{run_id}/generate-payslips")
def generate_payslips(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.generate_payslips)


@router.post("/runs/{run_id}/proceed-to-close")
def proceed_to_close(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.proceed_to_close)


@router.post("/runs/{run_id}/close")
def close_run(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.close_run)


@router.post("/runs/{run_id}/reopen")
def reopen_run(run_id: int, request: Request, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return _run_action(db, request, actor, run_id, payroll_runs.reopen_run)


# --------------------------------------------------------------------------
# Adjustments
# --------------------------------------------------------------------------


@router.post("/runs/{run_id}/payslips/{payslip_id}/adjustments")
def add_adjustment(
    run_id: int,
    payslip_id: int,
    payload: AdjustmentRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        slip, message = payroll_runs.add_adjustment(
            db,
            actor,
            run_id,
            payslip_id,
            kind=payload.kind,
            description=payload.description,
            amount=payload.amount,
            is_taxable=payload.is_taxable,
        )
        return {"ok": True, "message": message, "payslip": reporting.payslip_detail(slip)}, 200

    body = {"run_id": run_id, "payslip_id": payslip_id, **payload.model_dump(mode="json")}
    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(body), produce=_produce
    )
    return json_result(content, status)


@router.delete("/runs/{run_id}/payslips/{payslip_id}/adjustments/{kind}/{line_id}")
def remove_adjustment(
    run_id: int,
    payslip_id: int,
    kind: str,
    line_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    slip, message = payroll_runs.remove_adjustment(db, actor, run_id, payslip_id, kind=kind, line_id=line_id)
    return {"ok": True, "message": message, "payslip": reporting.payslip_detail(slip)}


# --------------------------------------------------------------------------
# Register and payslips
# --------------------------------------------------------------------------


def _json_register(register: dict) -> dict:
    """Decimal amounts rendered as strings for the JSON body."""

    def conv(value):
        if isinstance(value, dict):
            return {k: conv(v) for k, v in value.items()}
        if isinstance(value, list):
            return [conv(v) for v in value]
        if isinstance(value, Decimal):
            return str(value)
        return value

    return conv(register)


@router.get("/runs/{run_id}/register")
def run_register(
    run_id: int,
    request: Request,
    format: str = Query("json", pattern="^(json|csv|xlsx)$"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    run = payroll_runs.get_run(db, actor, run_id)
    register = reporting.payroll_register(db, run)
    if format == "json":
        return {"ok": True, "register": _json_register(register)}

    if format == "csv":
        stream = io.BytesIO(reporting.register_csv(register))
        media_type = "text/csv; charset=utf-8"
    else:
        stream = register_workbook(register)
        media_type = XLSX_MEDIA_TYPE
    filename = f"payroll_register_{run.run_number}.{format}"
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"}
    record_event(
        db,
        actor=actor.label,
        action="EXPORT_PAYROLL_REGISTER",
        resource=str(request.url.path),
        company_id=actor.company_id,
        meta={"run_id": run.id, "format": format},
        **client_meta(request),
    )
    return StreamingResponse(stream, media_type=media_type, headers=headers)


@router.get("/payslips/{payslip_id}")
def payslip_detail(payslip_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    slip = reporting.get_payslip(db, actor, payslip_id)
    return {"ok": True, "payslip": reporting.payslip_detail(slip)}
