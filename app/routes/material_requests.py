from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.services import material_processing, material_requests
from core.services.auth import Actor
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from hris_api.database import get_db
from hris_api.main import current_actor, json_result
from hris_api.schemas import (
    ApprovalFlowRequest,
    CancelRequest,
    MaterialRequestDraftRequest,
    MaterialRequestSubmitRequest,
    PostingRequest,
    ProcessingStatusRequest,
    RemarksRequest,
)

router = APIRouter(prefix="/material-requests", tags=["material-requests"])


def _idempotent(db: Session, request: Request, actor: Actor, body: dict, produce):
    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(body), produce=produce
    )
    return json_result(content, status)


def _reply(request_row, message: str, status: int = 200):
    return {"ok": True, "message": message, "request": material_requests.request_detail(request_row)}, status


@router.put("/approval-flows")
def configure_approval_flow(
    payload: ApprovalFlowRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    flow = material_requests.configure_approval_flow(
        db,
        actor,
        department_id=payload.department_id,
        required_steps=payload.required_steps,
        steps=[s.model_dump() for s in payload.steps],
    )
    return {
        "ok": True,
        "flow": {
            "department_id": flow.department_id,
            "required_steps": flow.required_steps,
            "steps": [
                {"step_number": s.step_number, "step_name": s.step_name, "approver_user_id": s.approver_user_id}
                for s in flow.steps
            ],
        },
    }


@router.post("")
def create_draft(
    payload: MaterialRequestDraftRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = material_requests.create_draft(
            db,
            actor,
            department_id=payload.department_id,
            items=[i.model_dump() for i in payload.items],
            date_needed=payload.date_needed,
            purpose=payload.purpose,
            remarks=payload.remarks,
        )
        return _reply(row, message, 201)

    return _idempotent(db, request, actor, payload.model_dump(mode="json"), _produce)


@router.get("")
def list_requests(
    scope: str = Query("mine", pattern="^(mine|approvals|all)$"),
    status: Optional[str] = Query(default=None),
    processing_status: Optional[str] = Query(default=None),
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows, next_cursor = material_requests.list_requests(
        db,
        actor,
        scope=scope,
        status=status,
        processing_status=processing_status,
        limit=limit,
        cursor=cursor,
    )
    return {
        "ok": True,
        "items": [material_requests.request_summary(r) for r in rows],
        "next_cursor": next_cursor,
        "has_more": next_cursor is not None,
    }


@router.get("/{request_id}")
def get_request(request_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    row = material_requests.get_request(db, actor, request_id)
    return {"ok": True, "request": material_requests.request_detail(row)}


@router.put("/{request_id}")
def update_draft(
    request_id: int,
    payload: MaterialRequestDraftRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    row, message = material_requests.update_draft(
        db,
        actor,
        request_id,
        department_id=payload.department_id,
        items=[i.model_dump() for i in payload.items],
        date_needed=payload.date_needed,
        purpose=payload.purpose,
        remarks=payload.remarks,
    )
    content, status = _reply(row, message)
    return json_result(content, status)


@router.post("/{request_id}/submit")
def submit(
    request_id: int,
    payload: MaterialRequestSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = material_requests.submit(db, actor, request_id, approver_selections=payload.as_mapping())
        return _reply(row, message)

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)


@router.post("/{request_id}/approve")
def approve(
    request_id: int,
    payload: RemarksRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = material_requests.approve_step(db, actor, request_id, remarks=payload.remarks)
        return _reply(row, message)

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)


@router.post("/{request_id}/reject")
def reject(
    request_id: int,
    payload: RemarksRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = material_requests.reject_step(db, actor, request_id, remarks=payload.remarks)
        return _reply(row, message)

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)


@router.post("/{request_id}/cancel")
def cancel(
    request_id: int,
    payload: CancelRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        row, message = material_requests.cancel(db, actor, request_id, reason=payload.reason)
        return _reply(row, message)

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)


@router.post("/{request_id}/processing")
def update_processing(
    request_id: int,
    payload: ProcessingStatusRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        result = material_processing.update_processing_status(
            db,
            actor,
            request_id,
            status=payload.status,
            remarks=payload.remarks,
            po_number=payload.po_number,
            supplier_name=payload.supplier_name,
            served_items=[i.model_dump() for i in payload.items],
        )
        return {"ok": True, **asdict(result)}, 200

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)


@router.post("/{request_id}/post")
def post_request(
    request_id: int,
    payload: PostingRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    def _produce():
        result = material_processing.post_request(
            db,
            actor,
            request_id,
            posting_reference=payload.posting_reference,
            remarks=payload.remarks,
        )
        return {"ok": True, **asdict(result)}, 200

    return _idempotent(db, request, actor, {"request_id": request_id, **payload.model_dump(mode="json")}, _produce)
