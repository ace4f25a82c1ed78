from __future__ import annotations

import datetime as dt
import sqlite3
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import USER_PASSWORD
from core import metrics
from core.db import serializable_transaction
from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import MaterialRequestPosting
from core.repositories import companies as companies_repo
from core.services import companies as company_service
from core.services import material_processing, material_requests
from core.services.auth import Actor
from core.settings import reset_settings_cache

ITEMS = [
    {"description": "Bond paper A4", "uom": "ream", "quantity": "10", "unit_price": "245.50"},
    {"description": "Toner cartridge", "uom": "pc", "quantity": "2"},
]


def _user(session, company, username, **flags):
    user = company_service.create_user(session, company, username=username, password=USER_PASSWORD, **flags)
    return Actor.from_user(user)


@pytest.fixture()
def requester(session, company):
    return _user(session, company, "requester")


@pytest.fixture()
def approvers(session, company, supervisor_user):
    second = _user(session, company, "manager", role="APPROVER", is_request_approver=True)
    return Actor.from_user(supervisor_user), second


@pytest.fixture()
def purchaser(session, company):
    return _user(session, company, "buyer", is_material_request_purchaser=True)


@pytest.fixture()
def poster(session, company):
    return _user(session, company, "poster", is_material_request_poster=True)


@pytest.fixture()
def flow(session, hr, department, approvers):
    first, second = approvers
    return material_requests.configure_approval_flow(
        session,
        hr,
        department_id=department.id,
        required_steps=2,
        steps=[
            {"step_number": 1, "step_name": "Department Head", "approver_user_ids": [first.user_id]},
            {"step_number": 2, "approver_user_ids": [second.user_id]},
        ],
    )


@pytest.fixture()
def draft(session, requester, department):
    request, _ = material_requests.create_draft(
        session, requester, department_id=department.id, items=ITEMS, date_needed=dt.date(2026, 2, 1), purpose="Office"
    )
    return request


@pytest.fixture()
def approved(session, requester, approvers, flow, draft):
    first, second = approvers
    material_requests.submit(
        session, requester, draft.id, approver_selections={1: first.user_id, 2: second.user_id}
    )
    material_requests.approve_step(session, first, draft.id)
    material_requests.approve_step(session, second, draft.id)
    return material_requests.get_request(session, requester, draft.id)


def _item_ids(request):
    return [item.id for item in request.items]


def test_create_draft_numbers_and_items(session, requester, draft):
    assert draft.status == "DRAFT"
    assert draft.request_number.startswith("MRQ-")
    assert draft.request_number.endswith("-000001")
    assert [i.line_number for i in draft.items] == [1, 2]
    assert draft.items[0].unit_price == Decimal("245.50")
    assert draft.items[1].unit_price is None


def test_draft_validation(session, requester, department):
    with pytest.raises(ValidationFailed):
        material_requests.create_draft(session, requester, department_id=department.id, items=[])
    with pytest.raises(ValidationFailed):
        material_requests.create_draft(
            session, requester, department_id=department.id, items=[{"description": "x", "uom": "pc", "quantity": "0"}]
        )


def test_update_draft_replaces_items(session, requester, department, draft):
    request, message = material_requests.update_draft(
        session, requester, draft.id, department_id=department.id, items=ITEMS[:1], purpose="Updated"
    )
    assert message.endswith("draft updated.")
    assert len(request.items) == 1
    assert request.purpose == "Updated"


def test_flow_rejects_non_approvers(session, hr, department, requester):
    with pytest.raises(ValidationFailed):
        material_requests.configure_approval_flow(
            session,
            hr,
            department_id=department.id,
            required_steps=1,
            steps=[{"step_number": 1, "approver_user_ids": [requester.user_id]}],
        )


def test_flow_requires_every_step_covered(session, hr, department, approvers):
    first, _ = approvers
    with pytest.raises(ValidationFailed):
        material_requests.configure_approval_flow(
            session,
            hr,
            department_id=department.id,
            required_steps=2,
            steps=[{"step_number": 1, "approver_user_ids": [first.user_id]}],
        )


def test_flow_is_hr_only(session, requester, department):
    with pytest.raises(PermissionDenied):
        material_requests.configure_approval_flow(
            session, requester, department_id=department.id, required_steps=1, steps=[]
        )


def test_submit_requires_every_selection(session, requester, approvers, flow, draft):
    first, _ = approvers
    with pytest.raises(ValidationFailed) as info:
        material_requests.submit(session, requester, draft.id, approver_selections={1: first.user_id})
    assert info.value.message == "Second approver step approver selection is required before submitting."


def test_only_requester_can_submit(session, hr, approvers, flow, draft):
    first, second = approvers
    with pytest.raises(NotFound):
        material_requests.submit(session, hr, draft.id, approver_selections={1: first.user_id, 2: second.user_id})


def test_two_step_approval(session, requester, approvers, flow, draft):
    first, second = approvers
    request, message = material_requests.submit(
        session, requester, draft.id, approver_selections={1: first.user_id, 2: second.user_id}
    )
    assert request.status == "PENDING_APPROVAL"
    assert request.current_step == 1
    assert message.endswith("submitted for approval.")

    with pytest.raises(PermissionDenied):
        material_requests.approve_step(session, second, draft.id)

    pending, _ = material_requests.list_requests(session, first, scope="approvals")
    assert [r.id for r in pending] == [draft.id]

    request, message = material_requests.approve_step(session, first, draft.id)
    assert message == f"Material request {request.request_number} approved at step 1."
    assert request.current_step == 2

    request, message = material_requests.approve_step(session, second, draft.id, remarks="ok")
    assert message == f"Material request {request.request_number} approved."
    assert request.status == "APPROVED"
    assert request.processing_status == "PENDING_PURCHASER"


def test_reject_skips_remaining_steps(session, requester, approvers, flow, draft):
    first, second = approvers
    material_requests.submit(session, requester, draft.id, approver_selections={1: first.user_id, 2: second.user_id})
    request, message = material_requests.reject_step(session, first, draft.id, remarks="Over budget")
    assert message.endswith("rejected.")
    assert request.status == "REJECTED"
    assert [s.status for s in request.approval_steps] == ["REJECTED", "SKIPPED"]


def test_cancel_pending_before_any_decision(session, requester, approvers, flow, draft):
    first, second = approvers
    material_requests.submit(session, requester, draft.id, approver_selections={1: first.user_id, 2: second.user_id})
    request, _ = material_requests.cancel(session, requester, draft.id)
    assert request.status == "CANCELLED"
    assert all(s.status == "SKIPPED" for s in request.approval_steps)
    with pytest.raises(ValidationFailed):
        material_requests.cancel(session, requester, draft.id)


def test_cancel_after_decision_is_rejected(session, requester, approvers, flow, draft):
    first, second = approvers
    material_requests.submit(session, requester, draft.id, approver_selections={1: first.user_id, 2: second.user_id})
    material_requests.approve_step(session, first, draft.id)
    with pytest.raises(ValidationFailed):
        material_requests.cancel(session, requester, draft.id)


def test_partial_then_complete_serve_and_post(session, requester, purchaser, poster, approved):
    paper, toner = _item_ids(approved)

    result = material_processing.update_processing_status(
        session,
        purchaser,
        approved.id,
        status="IN_PROGRESS",
        po_number="PO-1001",
        supplier_name="Office Depot PH",
        served_items=[{"item_id": paper, "quantity": "4"}],
    )
    assert result.message == f"Material request {approved.request_number} marked as served."
    assert result.serve_batch_id is not None

    detail = material_requests.request_detail(material_requests.get_request(session, requester, approved.id))
    assert detail["items"][0]["remaining_quantity"] == "6.0000"
    assert detail["processing_status"] == "IN_PROGRESS"

    with pytest.raises(ValidationFailed) as info:
        material_processing.update_processing_status(
            session, purchaser, approved.id, status="COMPLETED", served_items=[(paper, "6")]
        )
    assert "remaining item quantities" in info.value.message

    result = material_processing.update_processing_status(
        session,
        purchaser,
        approved.id,
        status="IN_PROGRESS",
        po_number="PO-1002",
        supplier_name="Office Depot PH",
        served_items=[(paper, "6")],
    )
    assert result.message.endswith("updated with served quantities.")

    result = material_processing.update_processing_status(
        session, purchaser, approved.id, status="COMPLETED", served_items=[(toner, "2")]
    )
    assert result.message.endswith("marked as completed.")
    request = material_requests.get_request(session, requester, approved.id)
    assert request.posting_status == "PENDING_POSTING"
    assert [b.is_final_serve for b in request.serve_batches] == [False, False, True]
    # PO and supplier carry over from the latest batch
    assert request.serve_batches[-1].po_number == "PO-1002"

    again = material_processing.update_processing_status(session, purchaser, approved.id, status="COMPLETED")
    assert again.already_completed
    assert again.message == f"Material request {approved.request_number} is already completed."

    posted = material_processing.post_request(session, poster, approved.id, posting_reference="GL-77")
    assert posted.message == f"Material request {approved.request_number} posted successfully."
    assert not posted.already_posted
    twice = material_processing.post_request(session, poster, approved.id)
    assert twice.already_posted
    assert twice.message.endswith("is already posted.")
    assert session.query(MaterialRequestPosting).count() == 1


def test_over_serve_is_rejected(session, purchaser, approved):
    paper, _ = _item_ids(approved)
    with pytest.raises(ValidationFailed) as info:
        material_processing.update_processing_status(
            session,
            purchaser,
            approved.id,
            status="IN_PROGRESS",
            po_number="PO-1",
            supplier_name="Supplier",
            served_items=[(paper, "10.5")],
        )
    assert info.value.message == "Served quantity cannot be greater than the remaining quantity."


def test_complete_requires_started_processing(session, purchaser, approved):
    with pytest.raises(ValidationFailed) as info:
        material_processing.update_processing_status(session, purchaser, approved.id, status="COMPLETED")
    assert info.value.message == "Start processing the request before marking it completed."


def test_in_progress_requires_po_supplier_and_items(session, purchaser, approved):
    paper, _ = _item_ids(approved)
    with pytest.raises(ValidationFailed):
        material_processing.update_processing_status(
            session, purchaser, approved.id, status="IN_PROGRESS", supplier_name="S", served_items=[(paper, "1")]
        )
    with pytest.raises(ValidationFailed):
        material_processing.update_processing_status(
            session, purchaser, approved.id, status="IN_PROGRESS", po_number="PO", supplier_name="S"
        )


def test_processing_and_posting_permissions(session, requester, poster, purchaser, approved):
    with pytest.raises(PermissionDenied):
        material_processing.update_processing_status(session, requester, approved.id, status="IN_PROGRESS")
    with pytest.raises(PermissionDenied):
        material_processing.post_request(session, purchaser, approved.id)
    with pytest.raises(NotFound) as info:
        material_processing.post_request(session, poster, approved.id)
    assert info.value.message == "Completed material request not found."


def test_normalize_served_items():
    items = material_processing.normalize_served_items([(1, "2.5"), {"item_id": 2, "quantity": 1}])
    assert [(i.item_id, i.quantity) for i in items] == [(1, Decimal("2.5")), (2, Decimal("1"))]
    with pytest.raises(ValidationFailed):
        material_processing.normalize_served_items([(1, "1"), (1, "2")])
    with pytest.raises(ValidationFailed):
        material_processing.normalize_served_items([(1, "0")])


def test_remaining_quantity_never_negative():
    assert material_processing.remaining_quantity("5", "7") == Decimal("0")
    assert material_processing.remaining_quantity("5", "1.25") == Decimal("3.7500")


def test_visibility_and_scopes(session, requester, approvers, staff, hr, draft):
    with pytest.raises(NotFound):
        material_requests.get_request(session, staff, draft.id)
    mine, cursor = material_requests.list_requests(session, requester, scope="mine")
    assert [r.id for r in mine] == [draft.id]
    assert cursor is None
    with pytest.raises(PermissionDenied):
        material_requests.list_requests(session, requester, scope="all")
    everything, _ = material_requests.list_requests(session, hr, scope="all")
    assert len(everything) == 1


def test_serializable_transaction_after_prior_reads(session, company):
    # Route dependencies read the actor before the service runs.
    companies_repo.get_by_id(session, company.id)
    assert session.in_transaction()
    with serializable_transaction(session):
        assert session.connection().get_execution_options().get("isolation_level") == "SERIALIZABLE"
    with serializable_transaction(session):
        assert session.connection().get_execution_options().get("isolation_level") == "SERIALIZABLE"


def _locked_error():
    return OperationalError("SELECT material_requests", {}, sqlite3.OperationalError("database is locked"))


def _started(session, purchaser, approved):
    paper, toner = _item_ids(approved)
    material_processing.update_processing_status(
        session,
        purchaser,
        approved.id,
        status="IN_PROGRESS",
        po_number="PO-1",
        supplier_name="Supplier",
        served_items=[(paper, "10"), (toner, "2")],
    )


def test_serve_retries_after_write_conflict(session, purchaser, approved, monkeypatch):
    paper, _ = _item_ids(approved)
    real_lock = material_processing._lock_request
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) == 1:
            raise _locked_error()
        return real_lock(*args)

    monkeypatch.setattr(material_processing, "_lock_request", flaky)
    retries = metrics.counter_value("hris_material_request_retry_total", operation="processing")
    result = material_processing.update_processing_status(
        session,
        purchaser,
        approved.id,
        status="IN_PROGRESS",
        po_number="PO-1",
        supplier_name="Supplier",
        served_items=[(paper, "3")],
    )
    assert len(calls) == 2
    assert result.processing_status == "IN_PROGRESS"
    assert metrics.counter_value("hris_material_request_retry_total", operation="processing") == retries + 1
    session.expire_all()
    assert approved.items[0].served_quantity == Decimal("3")
    assert len(approved.serve_batches) == 1


def test_serve_gives_up_after_max_retries(session, purchaser, approved, monkeypatch):
    paper, _ = _item_ids(approved)
    calls = []

    def always_locked(*args):
        calls.append(args)
        raise _locked_error()

    monkeypatch.setattr(material_processing, "_lock_request", always_locked)
    conflicts = metrics.counter_value("hris_material_request_conflict_total", operation="processing")
    with pytest.raises(Conflict) as info:
        material_processing.update_processing_status(
            session,
            purchaser,
            approved.id,
            status="IN_PROGRESS",
            po_number="PO-1",
            supplier_name="Supplier",
            served_items=[(paper, "3")],
        )
    assert info.value.message == "Failed to update processing status due to concurrent updates. Please retry."
    assert len(calls) == 3
    assert metrics.counter_value("hris_material_request_conflict_total", operation="processing") == conflicts + 1
    session.expire_all()
    assert approved.items[0].served_quantity == Decimal("0")


def test_posting_gives_up_after_max_retries(session, purchaser, poster, approved, monkeypatch):
    _started(session, purchaser, approved)
    material_processing.update_processing_status(session, purchaser, approved.id, status="COMPLETED")

    def always_locked(*args):
        raise _locked_error()

    monkeypatch.setattr(material_processing, "_lock_request", always_locked)
    with pytest.raises(Conflict) as info:
        material_processing.post_request(session, poster, approved.id)
    assert info.value.message == "Failed to post material request due to concurrent updates. Please retry."
    assert session.query(MaterialRequestPosting).count() == 0


def test_other_database_errors_are_not_retried(session, purchaser, approved, monkeypatch):
    paper, _ = _item_ids(approved)
    calls = []

    def broken(*args):
        calls.append(args)
        raise OperationalError("SELECT material_requests", {}, sqlite3.OperationalError("no such table"))

    monkeypatch.setattr(material_processing, "_lock_request", broken)
    with pytest.raises(OperationalError):
        material_processing.update_processing_status(
            session,
            purchaser,
            approved.id,
            status="IN_PROGRESS",
            po_number="PO-1",
            supplier_name="Supplier",
            served_items=[(paper, "3")],
        )
    assert len(calls) == 1


def test_retry_limit_follows_settings(session, purchaser, approved, monkeypatch):
    paper, _ = _item_ids(approved)
    monkeypatch.setenv("MATERIAL_REQUEST_MAX_RETRIES", "1")
    reset_settings_cache()
    calls = []

    def always_locked(*args):
        calls.append(args)
        raise _locked_error()

    monkeypatch.setattr(material_processing, "_lock_request", always_locked)
    with pytest.raises(Conflict):
        material_processing.update_processing_status(
            session,
            purchaser,
            approved.id,
            status="IN_PROGRESS",
            po_number="PO-1",
            supplier_name="Supplier",
            served_items=[(paper, "3")],
        )
    assert len(calls) == 1


@pytest.mark.parametrize("quantity, accepted", [("10.0004", True), ("10.0005", True), ("10.001", False)])
def test_serve_quantity_tolerance(session, purchaser, approved, quantity, accepted):
    paper, _ = _item_ids(approved)
    kwargs = dict(status="IN_PROGRESS", po_number="PO-1", supplier_name="Supplier", served_items=[(paper, quantity)])
    if accepted:
        result = material_processing.update_processing_status(session, purchaser, approved.id, **kwargs)
        assert result.processing_status == "IN_PROGRESS"
    else:
        with pytest.raises(ValidationFailed) as info:
            material_processing.update_processing_status(session, purchaser, approved.id, **kwargs)
        assert info.value.message == "Served quantity cannot be greater than the remaining quantity."


def test_complete_within_tolerance_of_remaining(session, purchaser, poster, approved):
    paper, toner = _item_ids(approved)
    material_processing.update_processing_status(
        session,
        purchaser,
        approved.id,
        status="IN_PROGRESS",
        po_number="PO-1",
        supplier_name="Supplier",
        served_items=[(paper, "9.9996"), (toner, "2")],
    )
    result = material_processing.update_processing_status(session, purchaser, approved.id, status="COMPLETED")
    assert result.processing_status == "COMPLETED"
    assert material_processing.post_request(session, poster, approved.id).message.endswith("posted successfully.")


def test_request_numbers_are_per_company(session, requester, draft):
    other = company_service.create_company(session, "Bayani Foods Corp.", "bayani-foods")
    other_dept = company_service.create_department(session, other, "WH", "Warehouse")
    other_requester = _user(session, other, "clerk")
    request, _ = material_requests.create_draft(session, other_requester, department_id=other_dept.id, items=ITEMS)
    assert request.request_number == draft.request_number
    assert request.company_id != draft.company_id

    second, _ = material_requests.create_draft(session, requester, department_id=draft.department_id, items=ITEMS)
    assert second.request_number.endswith("-000002")
