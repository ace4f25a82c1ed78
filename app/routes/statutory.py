from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.services import statutory
from core.services.auth import Actor
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from hris_api.database import get_db
from hris_api.main import json_result, require_hr
from hris_api.schemas import StatutoryPreviewRequest, StatutorySeedRequest, StatutoryTablesRequest

router = APIRouter(prefix="/statutory", tags=["statutory"])


@router.get("/tables")
def active_tables(
    on_date: Optional[dt.date] = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    day = on_date or dt.date.today()
    tables = statutory.active_tables(db, day)
    return {"ok": True, "on_date": day.isoformat(), "tables": statutory.tables_to_dict(tables)}


@router.post("/tables")
def upsert_tables(
    payload: StatutoryTablesRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        message = statutory.upsert_statutory_tables(
            db,
            effective_from=payload.effective_from,
            sss_rows=[r.model_dump() for r in payload.sss_rows],
            philhealth_rows=[r.model_dump() for r in payload.philhealth_rows],
            pagibig_rows=[r.model_dump() for r in payload.pagibig_rows],
            tax_rows=[r.model_dump() for r in payload.tax_rows],
            actor=actor.label,
            company_id=actor.company_id,
            table_type=payload.table_type,
        )
        return {"ok": True, "message": message}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.post("/tables/seed")
def seed_tables(
    payload: StatutorySeedRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr),
):
    def _produce():
        message = statutory.seed_default_tables(db, payload.effective_from, actor=actor.label)
        return {"ok": True, "message": message}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=actor.company_id, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.post("/preview")
def preview(payload: StatutoryPreviewRequest, db: Session = Depends(get_db), actor: Actor = Depends(require_hr)):
    result = statutory.preview_contributions(
        db,
        monthly_base=payload.monthly_base,
        on_date=payload.on_date or dt.date.today(),
        taxable=payload.taxable,
        table_type=payload.table_type,
    )
    return {"ok": True, **result}
