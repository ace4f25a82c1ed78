"""Material request drafting and department approval chains."""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import (
    Department,
    DepartmentApprovalFlow,
    DepartmentApprovalFlowStep,
    MaterialRequest,
    MaterialRequestApprovalStep,
    MaterialRequestItem,
    MaterialRequestServeBatch,
    User,
    utc_now,
)
from core.settings import get_settings
from core.utils.cursor import keyset_cursor, parse_keyset_cursor

from .audit import record_event
from .auth import Actor
from .calculation import ZERO, round_currency, round_quantity, to_decimal
from .material_processing import remaining_quantity

logger = logging.getLogger("hris_core.material_requests")

MAX_ITEMS = 200
MAX_APPROVAL_STEPS = 4
NUMBER_ATTEMPTS = 5
STEP_DISPLAY_NAMES = {1: "Initial", 2: "Second", 3: "Third", 4: "Fourth"}


@dataclass(frozen=True)
class DraftItem:
    description: str
    uom: str
    quantity: Decimal
    unit_price: Optional[Decimal] = None
    item_code: Optional[str] = None
    remarks: Optional[str] = None


def _coerce_item(raw: Any) -> DraftItem:
    if isinstance(raw, DraftItem):
        item = raw
    else:
        data = dict(raw)
        price = data.get("unit_price")
        item = DraftItem(
            description=str(data.get("description") or "").strip(),
            uom=str(data.get("uom") or "").strip(),
            quantity=to_decimal(data.get("quantity")),
            unit_price=None if price in (None, "") else to_decimal(price),
            item_code=(str(data["item_code"]).strip() or None) if data.get("item_code") else None,
            remarks=(str(data["remarks"]).strip() or None) if data.get("remarks") else None,
        )
    if not item.description or len(item.description) > 500:
        raise ValidationFailed("Item description is required (max 500 characters).")
    if not item.uom or len(item.uom) > 40:
        raise ValidationFailed("Unit of measure is required (max 40 characters).")
    if item.quantity <= ZERO:
        raise ValidationFailed("Quantity must be greater than zero.")
    if item.unit_price is not None and item.unit_price < ZERO:
        raise ValidationFailed("Unit price cannot be negative.")
    return item


def normalize_items(items: Iterable[Any]) -> list[DraftItem]:
    out = [_coerce_item(raw) for raw in items or ()]
    if not out:
        raise ValidationFailed("At least one item is required.")
    if len(out) > MAX_ITEMS:
        raise ValidationFailed(f"A material request can include at most {MAX_ITEMS} items.")
    return out


def _build_items(items: list[DraftItem]) -> list[MaterialRequestItem]:
    return [
        MaterialRequestItem(
            line_number=index,
            item_code=item.item_code,
            description=item.description,
            uom=item.uom,
            quantity=round_quantity(item.quantity),
            served_quantity=ZERO,
            unit_price=round_currency(item.unit_price) if item.unit_price is not None else None,
            remarks=item.remarks,
        )
        for index, item in enumerate(items, start=1)
    ]


def _department(session: Session, company_id: int, department_id: int) -> Department:
    dept = session.get(Department, int(department_id))
    if dept is None or dept.company_id != company_id or not dept.is_active:
        raise ValidationFailed("Department is not available in the active company.")
    return dept


def _audit(session: Session, actor: Actor, request: MaterialRequest, action: str, **meta: Any) -> None:
    record_event(
        session,
        actor=actor.label,
        action=action,
        resource=f"material_request:{request.id}",
        company_id=request.company_id,
        meta={"request_number": request.request_number, **meta},
    )


def next_request_number(session: Session, company_id: int, *, offset: int = 0, now: Optional[dt.datetime] = None) -> str:
    """``MRQ-{year}-{seq:06d}``, numbered per company; ``offset`` skips ahead after a collision."""
    tz = ZoneInfo(get_settings().payroll_timezone)
    year = (now or dt.datetime.now(tz)).astimezone(tz).year
    prefix = f"MRQ-{year}-"
    numbers = (
        session.query(MaterialRequest.request_number)
        .filter(MaterialRequest.company_id == company_id, MaterialRequest.request_number.like(f"{prefix}%"))
        .all()
    )
    seq = 0
    for (number,) in numbers:
        try:
            seq = max(seq, int(number[len(prefix):]))
        except ValueError:
            continue
    return f"{prefix}{seq + 1 + offset:06d}"


def _load_request(session: Session, actor: Actor, request_id: int) -> MaterialRequest:
    request = (
        session.query(MaterialRequest)
        .options(
            selectinload(MaterialRequest.items),
            selectinload(MaterialRequest.approval_steps),
            selectinload(MaterialRequest.serve_batches).selectinload(MaterialRequestServeBatch.items),
        )
        .filter(MaterialRequest.id == int(request_id), MaterialRequest.company_id == actor.company_id)
        .first()
    )
    if request is None:
        raise NotFound("Material request not found in the active company.")
    return request


def _can_view(actor: Actor, request: MaterialRequest) -> bool:
    if actor.is_hr or actor.is_material_request_purchaser or actor.is_material_request_poster:
        return True
    if request.requester_user_id == actor.user_id:
        return True
    return any(step.approver_user_id == actor.user_id for step in request.approval_steps)


# --------------------------------------------------------------------------
# Drafts
# --------------------------------------------------------------------------


def create_draft(
    session: Session,
    actor: Actor,
    *,
    department_id: int,
    items: Iterable[Any],
    date_needed: Optional[dt.date] = None,
    purpose: str = "",
    remarks: str = "",
) -> tuple[MaterialRequest, str]:
    lines = normalize_items(items)
    dept = _department(session, actor.company_id, department_id)
    for attempt in range(NUMBER_ATTEMPTS):
        request = MaterialRequest(
            company_id=actor.company_id,
            request_number=next_request_number(session, actor.company_id, offset=attempt),
            department_id=dept.id,
            requester_user_id=actor.user_id,
            date_needed=date_needed,
            purpose=(purpose or "").strip(),
            remarks=(remarks or "").strip(),
            status="DRAFT",
            required_steps=0,
            current_step=0,
        )
        request.items = _build_items(lines)
        session.add(request)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("material request number collision, retrying", extra={"attempt": attempt + 1})
            continue
        _audit(session, actor, request, "CREATE_MATERIAL_REQUEST_DRAFT", items=len(lines))
        return request, f"Material request {request.request_number} saved as draft."
    raise Conflict("Failed to create material request draft: REQUEST_NUMBER_GENERATION_FAILED")


def update_draft(
    session: Session,
    actor: Actor,
    request_id: int,
    *,
    department_id: int,
    items: Iterable[Any],
    date_needed: Optional[dt.date] = None,
    purpose: str = "",
    remarks: str = "",
) -> tuple[MaterialRequest, str]:
    lines = normalize_items(items)
    request = _load_request(session, actor, request_id)
    if request.requester_user_id != actor.user_id:
        raise NotFound("Material request draft not found.")
    if request.status != "DRAFT":
        raise ValidationFailed("Only draft material requests can be edited.")
    dept = _department(session, actor.company_id, department_id)
    request.department_id = dept.id
    request.date_needed = date_needed
    request.purpose = (purpose or "").strip()
    request.remarks = (remarks or "").strip()
    request.items.clear()
    session.flush()
    request.items.extend(_build_items(lines))
    session.commit()
    _audit(session, actor, request, "UPDATE_MATERIAL_REQUEST_DRAFT", items=len(lines))
    return request, f"Material request {request.request_number} draft updated."


# --------------------------------------------------------------------------
# Approval flow configuration
# --------------------------------------------------------------------------


def configure_approval_flow(
    session: Session,
    actor: Actor,
    *,
    department_id: int,
    required_steps: int,
    steps: Iterable[Mapping[str, Any]],
) -> DepartmentApprovalFlow:
    """Replace the department's flow. Each entry: step_number, step_name, approver_user_ids."""
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to approval flow settings.")
    required_steps = int(required_steps)
    if not 1 <= required_steps <= MAX_APPROVAL_STEPS:
        raise ValidationFailed(f"Required steps must be between 1 and {MAX_APPROVAL_STEPS}.")
    dept = _department(session, actor.company_id, department_id)

    rows: list[DepartmentApprovalFlowStep] = []
    for entry in steps:
        number = int(entry["step_number"])
        if not 1 <= number <= required_steps:
            raise ValidationFailed(
                "Department approval flow is invalid. One or more approvers are assigned outside the required step range."
            )
        for user_id in dict.fromkeys(int(u) for u in entry.get("approver_user_ids") or ()):
            rows.append(
                DepartmentApprovalFlowStep(
                    step_number=number,
                    step_name=str(entry.get("step_name") or "").strip(),
                    approver_user_id=user_id,
                )
            )
    covered = {row.step_number for row in rows}
    if any(n not in covered for n in range(1, required_steps + 1)):
        raise ValidationFailed("Department approval flow is invalid. Each required step must have at least one approver.")
    _ensure_approvers(session, actor.company_id, {row.approver_user_id for row in rows})

    flow = (
        session.query(DepartmentApprovalFlow)
        .filter(DepartmentApprovalFlow.company_id == actor.company_id, DepartmentApprovalFlow.department_id == dept.id)
        .first()
    )
    if flow is None:
        flow = DepartmentApprovalFlow(company_id=actor.company_id, department_id=dept.id)
        session.add(flow)
    flow.required_steps = required_steps
    flow.is_active = True
    flow.steps.clear()
    session.flush()
    flow.steps.extend(rows)
    session.commit()
    record_event(
        session,
        actor=actor.label,
        action="CONFIGURE_MATERIAL_REQUEST_FLOW",
        resource=f"department:{dept.id}",
        company_id=actor.company_id,
        meta={"required_steps": required_steps, "approvers": len(rows)},
    )
    return flow


def _ensure_approvers(session: Session, company_id: int, user_ids: set[int]) -> None:
    if not user_ids:
        return
    valid = (
        session.query(User.id)
        .filter(
            User.id.in_(user_ids),
            User.company_id == company_id,
            User.is_active.is_(True),
            User.is_request_approver.is_(True),
        )
        .count()
    )
    if valid != len(user_ids):
        raise ValidationFailed("Department approval flow contains one or more inactive or unauthorized approvers.")


def _step_display_name(number: int, name: Optional[str]) -> str:
    name = (name or "").strip()
    return name or f"{STEP_DISPLAY_NAMES.get(number, f'Step {number}')} approver step"


# --------------------------------------------------------------------------
# Submit / approve / reject / cancel
# --------------------------------------------------------------------------


def submit(
    session: Session,
    actor: Actor,
    request_id: int,
    *,
    approver_selections: Mapping[int, int],
) -> tuple[MaterialRequest, str]:
    """Send a draft into its department's approval chain.

    ``approver_selections`` maps step number to the approver picked for it.
    """
    request = _load_request(session, actor, request_id)
    if request.requester_user_id != actor.user_id:
        raise NotFound("Material request not found in the active company.")
    if request.status != "DRAFT":
        raise ValidationFailed("Only draft material requests can be submitted for approval.")
    if not request.items:
        raise ValidationFailed("At least one item is required before submitting the request.")

    flow = (
        session.query(DepartmentApprovalFlow)
        .options(selectinload(DepartmentApprovalFlow.steps))
        .filter(
            DepartmentApprovalFlow.company_id == actor.company_id,
            DepartmentApprovalFlow.department_id == request.department_id,
            DepartmentApprovalFlow.is_active.is_(True),
        )
        .first()
    )
    if flow is None:
        raise ValidationFailed("No active department approval flow found for this request.")

    selections = {int(k): int(v) for k, v in (approver_selections or {}).items() if v}
    chosen: list[DepartmentApprovalFlowStep] = []
    for number in range(1, flow.required_steps + 1):
        candidates = [s for s in flow.steps if s.step_number == number]
        if not candidates:
            raise ValidationFailed(
                "Department approval flow is invalid. Each required step must have at least one approver."
            )
        display = _step_display_name(number, candidates[0].step_name)
        selected = selections.get(number)
        if selected is None:
            raise ValidationFailed(f"{display} approver selection is required before submitting.")
        match = next((s for s in candidates if s.approver_user_id == selected), None)
        if match is None:
            raise ValidationFailed(f"Selected approver for {display} is no longer valid for the department flow.")
        chosen.append(match)
    _ensure_approvers(session, actor.company_id, {s.approver_user_id for s in chosen})

    request.approval_steps.clear()
    session.flush()
    request.approval_steps.extend(
        MaterialRequestApprovalStep(
            step_number=s.step_number,
            step_name=s.step_name,
            approver_user_id=s.approver_user_id,
            status="PENDING",
        )
        for s in chosen
    )
    request.status = "PENDING_APPROVAL"
    request.required_steps = flow.required_steps
    request.current_step = 1
    request.submitted_at = utc_now()
    request.approved_at = None
    request.rejected_at = None
    request.cancelled_at = None
    session.commit()
    _audit(session, actor, request, "SUBMIT_MATERIAL_REQUEST", required_steps=flow.required_steps)
    return request, f"Material request {request.request_number} submitted for approval."


def _pending_actor_step(session: Session, actor: Actor, request_id: int, verb: str) -> tuple[MaterialRequest, MaterialRequestApprovalStep]:
    request = (
        session.query(MaterialRequest)
        .options(selectinload(MaterialRequest.approval_steps))
        .filter(
            MaterialRequest.id == int(request_id),
            MaterialRequest.company_id == actor.company_id,
            MaterialRequest.status == "PENDING_APPROVAL",
        )
        .first()
    )
    if request is None:
        raise NotFound("Material request not found or no longer pending approval.")
    step = next(
        (
            s
            for s in request.approval_steps
            if s.step_number == request.current_step and s.approver_user_id == actor.user_id and s.status == "PENDING"
        ),
        None,
    )
    if step is None:
        raise PermissionDenied(f"You are not allowed to {verb} this request at the current step.")
    return request, step


def _claim_step(session: Session, step: MaterialRequestApprovalStep, status: str, remarks: Optional[str]) -> None:
    claimed = session.execute(
        update(MaterialRequestApprovalStep)
        .where(MaterialRequestApprovalStep.id == step.id, MaterialRequestApprovalStep.status == "PENDING")
        .values(status=status, acted_at=utc_now(), remarks=remarks)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        session.rollback()
        raise Conflict("The approval step is no longer pending.")


def approve_step(session: Session, actor: Actor, request_id: int, *, remarks: Optional[str] = None) -> tuple[MaterialRequest, str]:
    request, step = _pending_actor_step(session, actor, request_id, "approve")
    note = (remarks or "").strip() or None
    observed_step = request.current_step
    is_final = observed_step >= request.required_steps
    now = utc_now()

    _claim_step(session, step, "APPROVED", note)
    session.execute(
        update(MaterialRequestApprovalStep)
        .where(
            MaterialRequestApprovalStep.material_request_id == request.id,
            MaterialRequestApprovalStep.step_number == observed_step,
            MaterialRequestApprovalStep.status == "PENDING",
            MaterialRequestApprovalStep.id != step.id,
        )
        .values(status="SKIPPED", acted_at=now, remarks="Skipped after step approval")
        .execution_options(synchronize_session=False)
    )
    guard = update(MaterialRequest).where(
        MaterialRequest.id == request.id,
        MaterialRequest.status == "PENDING_APPROVAL",
        MaterialRequest.current_step == observed_step,
    )
    if is_final:
        values: dict[str, Any] = {
            "status": "APPROVED",
            "approved_at": now,
            "processing_status": "PENDING_PURCHASER",
            "processing_started_at": None,
            "processing_completed_at": None,
            "processed_by_user_id": None,
            "updated_at": now,
        }
        lost = "The request state changed while processing the approval."
    else:
        values = {"current_step": observed_step + 1, "updated_at": now}
        lost = "The request state changed while advancing to the next step."
    moved = session.execute(guard.values(**values).execution_options(synchronize_session=False))
    if moved.rowcount != 1:
        session.rollback()
        raise Conflict(lost)
    session.commit()
    session.refresh(request)
    _audit(
        session,
        actor,
        request,
        "APPROVE_MATERIAL_REQUEST_FINAL_STEP" if is_final else "APPROVE_MATERIAL_REQUEST_STEP",
        step=observed_step,
    )
    if is_final:
        return request, f"Material request {request.request_number} approved."
    return request, f"Material request {request.request_number} approved at step {observed_step}."


def reject_step(session: Session, actor: Actor, request_id: int, *, remarks: Optional[str] = None) -> tuple[MaterialRequest, str]:
    request, step = _pending_actor_step(session, actor, request_id, "reject")
    note = (remarks or "").strip() or "Rejected"
    observed_step = request.current_step
    now = utc_now()

    _claim_step(session, step, "REJECTED", note)
    session.execute(
        update(MaterialRequestApprovalStep)
        .where(
            MaterialRequestApprovalStep.material_request_id == request.id,
            MaterialRequestApprovalStep.step_number >= observed_step,
            MaterialRequestApprovalStep.status == "PENDING",
        )
        .values(status="SKIPPED", acted_at=now, remarks="Skipped after rejection")
        .execution_options(synchronize_session=False)
    )
    moved = session.execute(
        update(MaterialRequest)
        .where(
            MaterialRequest.id == request.id,
            MaterialRequest.status == "PENDING_APPROVAL",
            MaterialRequest.current_step == observed_step,
        )
        .values(status="REJECTED", rejected_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        session.rollback()
        raise Conflict("The request state changed while processing the rejection.")
    session.commit()
    session.refresh(request)
    _audit(session, actor, request, "REJECT_MATERIAL_REQUEST", step=observed_step, remarks=note)
    return request, f"Material request {request.request_number} rejected."


def cancel(session: Session, actor: Actor, request_id: int, *, reason: Optional[str] = None) -> tuple[MaterialRequest, str]:
    request = _load_request(session, actor, request_id)
    if request.requester_user_id != actor.user_id and not actor.is_hr:
        raise PermissionDenied("You are not allowed to cancel this request.")
    if request.status not in ("DRAFT", "PENDING_APPROVAL"):
        raise ValidationFailed("Only draft or pending requests can be cancelled.")
    if request.status == "PENDING_APPROVAL" and any(
        s.status in ("APPROVED", "REJECTED") for s in request.approval_steps
    ):
        raise ValidationFailed("This request already has an approval decision and can no longer be cancelled.")
    now = utc_now()
    for s in request.approval_steps:
        if s.status == "PENDING":
            s.status = "SKIPPED"
            s.acted_at = now
            s.remarks = "Cancelled by requester"
    previous = request.status
    request.status = "CANCELLED"
    request.cancelled_at = now
    session.commit()
    _audit(
        session,
        actor,
        request,
        "CANCEL_MATERIAL_REQUEST",
        previous_status=previous,
        reason=(reason or "").strip() or "Cancelled by requester",
    )
    return request, f"Material request {request.request_number} cancelled."


# --------------------------------------------------------------------------
# Queries
# --------------------------------------------------------------------------


def get_request(session: Session, actor: Actor, request_id: int) -> MaterialRequest:
    request = _load_request(session, actor, request_id)
    if not _can_view(actor, request):
        raise NotFound("Material request not found in the active company.")
    return request


def list_requests(
    session: Session,
    actor: Actor,
    *,
    scope: str = "mine",
    status: Optional[str] = None,
    processing_status: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[str] = None,
) -> tuple[list[MaterialRequest], Optional[str]]:
    """Newest-first page.

    ``scope``: ``mine`` (own requests), ``approvals`` (pending at the
    caller's step) or ``all`` (HR, purchasers and posters).
    """
    limit = max(1, min(int(limit or 20), 100))
    q = session.query(MaterialRequest).filter(MaterialRequest.company_id == actor.company_id)
    if scope == "mine":
        q = q.filter(MaterialRequest.requester_user_id == actor.user_id)
    elif scope == "approvals":
        q = q.join(
            MaterialRequestApprovalStep,
            and_(
                MaterialRequestApprovalStep.material_request_id == MaterialRequest.id,
                MaterialRequestApprovalStep.step_number == MaterialRequest.current_step,
            ),
        ).filter(
            MaterialRequest.status == "PENDING_APPROVAL",
            MaterialRequestApprovalStep.approver_user_id == actor.user_id,
            MaterialRequestApprovalStep.status == "PENDING",
        )
    elif scope == "all":
        if not (actor.is_hr or actor.is_material_request_purchaser or actor.is_material_request_poster):
            raise PermissionDenied("You are not allowed to view all material requests.")
    else:
        raise ValidationFailed(f"Unknown scope: {scope}.")
    if status:
        q = q.filter(MaterialRequest.status == status)
    if processing_status:
        q = q.filter(MaterialRequest.processing_status == processing_status)
    if cursor:
        try:
            ts, row_id = parse_keyset_cursor(cursor)
        except ValueError as exc:
            raise ValidationFailed("Invalid cursor.") from exc
        q = q.filter(
            or_(MaterialRequest.created_at < ts, and_(MaterialRequest.created_at == ts, MaterialRequest.id < row_id))
        )
    rows = q.order_by(MaterialRequest.created_at.desc(), MaterialRequest.id.desc()).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = keyset_cursor(rows[-1].created_at, rows[-1].id)
    return rows, next_cursor


def _iso(value: Optional[dt.datetime | dt.date]) -> Optional[str]:
    return value.isoformat() if value else None


def request_summary(request: MaterialRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "request_number": request.request_number,
        "department_id": request.department_id,
        "requester_user_id": request.requester_user_id,
        "status": request.status,
        "current_step": request.current_step,
        "required_steps": request.required_steps,
        "processing_status": request.processing_status,
        "posting_status": request.posting_status,
        "date_needed": _iso(request.date_needed),
        "created_at": _iso(request.created_at),
    }


def request_detail(request: MaterialRequest) -> dict[str, Any]:
    data = request_summary(request)
    data.update(
        {
            "purpose": request.purpose,
            "remarks": request.remarks,
            "submitted_at": _iso(request.submitted_at),
            "approved_at": _iso(request.approved_at),
            "rejected_at": _iso(request.rejected_at),
            "cancelled_at": _iso(request.cancelled_at),
            "processing_started_at": _iso(request.processing_started_at),
            "processing_completed_at": _iso(request.processing_completed_at),
            "processing_remarks": request.processing_remarks,
            "posting_reference": request.posting_reference,
            "posted_at": _iso(request.posted_at),
            "items": [
                {
                    "id": item.id,
                    "line_number": item.line_number,
                    "item_code": item.item_code,
                    "description": item.description,
                    "uom": item.uom,
                    "quantity": str(item.quantity),
                    "served_quantity": str(item.served_quantity),
                    "remaining_quantity": str(remaining_quantity(item.quantity, item.served_quantity)),
                    "unit_price": str(item.unit_price) if item.unit_price is not None else None,
                }
                for item in request.items
            ],
            "approval_steps": [
                {
                    "step_number": s.step_number,
                    "step_name": s.step_name,
                    "approver_user_id": s.approver_user_id,
                    "status": s.status,
                    "acted_at": _iso(s.acted_at),
                    "remarks": s.remarks,
                }
                for s in request.approval_steps
            ],
            "serve_batches": [
                {
                    "id": b.id,
                    "po_number": b.po_number,
                    "supplier_name": b.supplier_name,
                    "is_final_serve": b.is_final_serve,
                    "served_at": _iso(b.served_at),
                    "items": [
                        {"item_id": bi.material_request_item_id, "quantity_served": str(bi.quantity_served)}
                        for bi in b.items
                    ],
                }
                for b in request.serve_batches
            ],
        }
    )
    return data
