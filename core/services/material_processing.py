"""Purchaser serving and poster sign-off for approved material requests.

Serving reconciles per-item served quantities against what was requested,
one serve batch (PO + supplier) at a time. Both writes run under a
SERIALIZABLE transaction with the request row locked, and are retried a
bounded number of times when the database reports a write conflict.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, selectinload

from core import metrics
from core.db import is_serialization_conflict, serializable_transaction
from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import (
    MaterialRequest,
    MaterialRequestPosting,
    MaterialRequestServeBatch,
    MaterialRequestServeBatchItem,
    utc_now,
)
from core.settings import get_settings

from .audit import record_event
from .auth import Actor
from .calculation import ZERO, round_quantity, to_decimal

logger = logging.getLogger("hris_core.material_requests")

PROCESSING_TARGETS = ("IN_PROGRESS", "COMPLETED")
MAX_SERVED_ITEMS = 200

T = TypeVar("T")


@dataclass(frozen=True)
class ServedItem:
    item_id: int
    quantity: Decimal


@dataclass(frozen=True)
class ProcessingResult:
    request_id: int
    request_number: str
    processing_status: str
    message: str
    already_completed: bool = False
    serve_batch_id: Optional[int] = None


@dataclass(frozen=True)
class PostingResult:
    request_id: int
    request_number: str
    message: str
    already_posted: bool = False


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def normalize_served_items(items: Iterable[Any]) -> list[ServedItem]:
    """Coerce ``(item_id, quantity)`` pairs, mappings or ``ServedItem`` values.

    Rejects duplicates and non-positive quantities the same way the API
    schema does, so direct service callers get identical behaviour.
    """
    out: list[ServedItem] = []
    seen: set[int] = set()
    for raw in items or ():
        if isinstance(raw, ServedItem):
            item = raw
        elif isinstance(raw, dict):
            item = ServedItem(int(raw["item_id"]), to_decimal(raw.get("quantity")))
        else:
            item_id, qty = raw
            item = ServedItem(int(item_id), to_decimal(qty))
        if item.item_id in seen:
            raise ValidationFailed("Each request item can only appear once per serve action.")
        if item.quantity <= ZERO:
            raise ValidationFailed("Served quantity must be greater than zero.")
        seen.add(item.item_id)
        out.append(item)
    if len(out) > MAX_SERVED_ITEMS:
        raise ValidationFailed(f"A serve action can include at most {MAX_SERVED_ITEMS} items.")
    return out


def _with_retries(session: Session, work: Callable[[], T], *, operation: str, failure_message: str) -> T:
    max_retries = get_settings().material_request_max_retries
    for attempt in range(1, max_retries + 1):
        try:
            with serializable_transaction(session):
                return work()
        except DBAPIError as exc:
            if not is_serialization_conflict(exc):
                raise
            if attempt >= max_retries:
                metrics.record_material_request_conflict(operation)
                logger.warning("material request %s gave up after %s attempts", operation, attempt)
                raise Conflict(failure_message) from exc
            metrics.record_material_request_retry(operation)
            logger.info("material request write conflict, retrying", extra={"operation": operation, "attempt": attempt})
    raise Conflict(failure_message)


def _lock_request(session: Session, company_id: int, request_id: int) -> Optional[MaterialRequest]:
    # SQLite ignores FOR UPDATE; the database-level write lock covers it there.
    return (
        session.query(MaterialRequest)
        .options(selectinload(MaterialRequest.items), selectinload(MaterialRequest.serve_batches))
        .filter(MaterialRequest.id == int(request_id), MaterialRequest.company_id == company_id)
        .with_for_update(of=MaterialRequest)
        .populate_existing()
        .first()
    )


def _latest_batch(request: MaterialRequest) -> Optional[MaterialRequestServeBatch]:
    if not request.serve_batches:
        return None
    return max(request.serve_batches, key=lambda b: (b.served_at or dt.datetime.min.replace(tzinfo=dt.UTC), b.id))


def remaining_quantity(quantity: Any, served: Any) -> Decimal:
    return max(ZERO, round_quantity(to_decimal(quantity) - to_decimal(served)))


def update_processing_status(
    session: Session,
    actor: Actor,
    request_id: int,
    *,
    status: str,
    remarks: Optional[str] = None,
    po_number: Optional[str] = None,
    supplier_name: Optional[str] = None,
    served_items: Iterable[Any] = (),
) -> ProcessingResult:
    if not (actor.is_hr or actor.is_material_request_purchaser):
        raise PermissionDenied("You are not allowed to process material requests.")
    if status not in PROCESSING_TARGETS:
        raise ValidationFailed(f"Unsupported processing status: {status}.")
    items = normalize_served_items(served_items)
    if status == "IN_PROGRESS":
        if not _clean(po_number):
            raise ValidationFailed("PO # is required when marking request as served.")
        if not _clean(supplier_name):
            raise ValidationFailed("Supplier is required when marking request as served.")
        if not items:
            raise ValidationFailed("At least one line item quantity is required when marking request as served.")

    tolerance = get_settings().serve_quantity_tolerance
    changes: dict[str, Any] = {}

    def work() -> ProcessingResult:
        request = _lock_request(session, actor.company_id, request_id)
        if request is None or request.status != "APPROVED":
            raise NotFound("Approved material request not found.")

        previous = request.processing_status or "PENDING_PURCHASER"
        if status == "IN_PROGRESS":
            if request.posting_status == "POSTED":
                raise ValidationFailed("Posted requests can no longer be processed.")
            if previous == "COMPLETED":
                raise ValidationFailed("Completed requests cannot be moved back to in progress.")
        else:
            if request.posting_status == "POSTED":
                raise ValidationFailed("This request is already posted.")
            if previous == "PENDING_PURCHASER":
                raise ValidationFailed("Start processing the request before marking it completed.")
            if previous == "COMPLETED":
                return ProcessingResult(
                    request_id=request.id,
                    request_number=request.request_number,
                    processing_status="COMPLETED",
                    message=f"Material request {request.request_number} is already completed.",
                    already_completed=True,
                )

        latest = _latest_batch(request)
        next_remarks = _clean(remarks) or request.processing_remarks or None
        next_po = _clean(po_number) or (latest.po_number if latest else "")
        next_supplier = _clean(supplier_name) or (latest.supplier_name if latest else "")

        by_id = {item.id: item for item in request.items}
        for served in items:
            if served.item_id not in by_id:
                raise ValidationFailed("One or more served items do not belong to this request.")
        for served in items:
            line = by_id[served.item_id]
            if served.quantity > remaining_quantity(line.quantity, line.served_quantity) + tolerance:
                raise ValidationFailed("Served quantity cannot be greater than the remaining quantity.")
        if items and (not next_po or not next_supplier):
            raise ValidationFailed("PO # and supplier are required to mark request as served.")

        for served in items:
            line = by_id[served.item_id]
            line.served_quantity = round_quantity(to_decimal(line.served_quantity) + served.quantity)

        if status == "COMPLETED":
            if any(remaining_quantity(i.quantity, i.served_quantity) > tolerance for i in request.items):
                raise ValidationFailed(
                    "Cannot mark request as completed while there are remaining item quantities to serve."
                )

        now = utc_now()
        changes.update(
            {
                "processing_status": [previous, status],
                "posting_status": [request.posting_status, None if status == "IN_PROGRESS" else "PENDING_POSTING"],
                "served_items": [[s.item_id, str(s.quantity)] for s in items],
            }
        )
        request.processing_status = status
        request.processed_by_user_id = actor.user_id
        request.processing_remarks = next_remarks
        if status == "IN_PROGRESS":
            request.processing_started_at = request.processing_started_at or now
            request.processing_completed_at = None
            request.posting_status = None
            request.posting_reference = None
            request.posting_remarks = None
            request.posted_at = None
            request.posted_by_user_id = None
        else:
            request.processing_started_at = request.processing_started_at or now
            request.processing_completed_at = now
            request.posting_status = "PENDING_POSTING"
            request.posting_reference = None
            request.posting_remarks = None
            request.posted_at = None
            request.posted_by_user_id = None

        batch_id = None
        if items:
            batch = MaterialRequestServeBatch(
                po_number=next_po,
                supplier_name=next_supplier,
                remarks=next_remarks,
                is_final_serve=status == "COMPLETED",
                served_by_user_id=actor.user_id,
                served_at=now,
            )
            batch.items = [
                MaterialRequestServeBatchItem(material_request_item_id=s.item_id, quantity_served=s.quantity)
                for s in items
            ]
            request.serve_batches.append(batch)
            session.flush()
            batch_id = batch.id
        elif status == "COMPLETED" and latest is not None:
            latest.is_final_serve = True
            batch_id = latest.id

        if status == "COMPLETED":
            message = f"Material request {request.request_number} marked as completed."
        elif previous == "IN_PROGRESS":
            message = f"Material request {request.request_number} updated with served quantities."
        else:
            message = f"Material request {request.request_number} marked as served."
        return ProcessingResult(
            request_id=request.id,
            request_number=request.request_number,
            processing_status=status,
            message=message,
            serve_batch_id=batch_id,
        )

    result = _with_retries(
        session,
        work,
        operation="processing",
        failure_message="Failed to update processing status due to concurrent updates. Please retry.",
    )
    if not result.already_completed:
        record_event(
            session,
            actor=actor.label,
            action="UPDATE_MATERIAL_REQUEST_PROCESSING_STATUS",
            resource=f"material_request:{result.request_id}",
            company_id=actor.company_id,
            meta={"request_number": result.request_number, **changes},
        )
        logger.info(
            "material request processing updated",
            extra={"request_id": result.request_id, "processing_status": result.processing_status},
        )
    return result


def post_request(
    session: Session,
    actor: Actor,
    request_id: int,
    *,
    posting_reference: Optional[str] = None,
    remarks: Optional[str] = None,
) -> PostingResult:
    if not (actor.is_hr or actor.is_material_request_poster):
        raise PermissionDenied("You are not allowed to post material requests.")
    tolerance = get_settings().serve_quantity_tolerance
    reference = _clean(posting_reference) or None
    note = _clean(remarks) or None

    def work() -> PostingResult:
        request = _lock_request(session, actor.company_id, request_id)
        if request is None or request.status != "APPROVED" or request.processing_status != "COMPLETED":
            raise NotFound("Completed material request not found.")
        if request.posting_status == "POSTED":
            return PostingResult(
                request_id=request.id,
                request_number=request.request_number,
                message=f"Material request {request.request_number} is already posted.",
                already_posted=True,
            )
        if any(remaining_quantity(i.quantity, i.served_quantity) > tolerance for i in request.items):
            raise ValidationFailed("Cannot post request while item quantities are not fully served.")
        now = utc_now()
        request.posting_status = "POSTED"
        request.posting_reference = reference
        request.posting_remarks = note
        request.posted_at = now
        request.posted_by_user_id = actor.user_id
        session.add(
            MaterialRequestPosting(
                material_request_id=request.id,
                posting_reference=reference or "",
                remarks=note,
                posted_by_user_id=actor.user_id,
                posted_at=now,
            )
        )
        return PostingResult(
            request_id=request.id,
            request_number=request.request_number,
            message=f"Material request {request.request_number} posted successfully.",
        )

    result = _with_retries(
        session,
        work,
        operation="posting",
        failure_message="Failed to post material request due to concurrent updates. Please retry.",
    )
    if not result.already_posted:
        record_event(
            session,
            actor=actor.label,
            action="POST_MATERIAL_REQUEST",
            resource=f"material_request:{result.request_id}",
            company_id=actor.company_id,
            meta={"request_number": result.request_number, "posting_reference": reference},
        )
    return result
