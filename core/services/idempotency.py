from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
from typing import Any, Callable, Optional, Tuple

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import Conflict
from core.models import IdempotencyRecord, utc_now

logger = logging.getLogger("hris_core.idempotency")

IDEMPOTENCY_HEADER = "Idempotency-Key"


def compute_body_hash(obj: Any) -> str:
    """Stable SHA256 hex digest of a payload.

    dict/list values are dumped as canonical JSON (sorted keys, compact
    separators) so that key order in the client body does not matter.
    """
    if obj is None:
        data = b"null"
    elif isinstance(obj, (bytes, bytearray)):
        data = bytes(obj)
    elif isinstance(obj, str):
        data = obj.encode("utf-8")
    else:
        dumped = json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
        data = dumped.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _find(db: Session, company_id: Optional[int], key: str, method: str, path: str) -> Optional[IdempotencyRecord]:
    scope = IdempotencyRecord.company_id.is_(None) if company_id is None else IdempotencyRecord.company_id == company_id
    return (
        db.query(IdempotencyRecord)
        .filter(
            scope,
            IdempotencyRecord.key == key,
            IdempotencyRecord.method == method,
            IdempotencyRecord.path == path,
        )
        .first()
    )


def _replay(record: IdempotencyRecord, body_hash: str) -> Tuple[dict, int]:
    if record.body_hash != body_hash:
        raise Conflict("idempotency key conflict", code="idempotency_conflict")
    try:
        content = json.loads(record.response_json or "{}")
    except ValueError:
        logger.warning("stored idempotent response is not valid JSON", extra={"record_id": record.id})
        content = {"ok": True}
    return content, int(record.status_code or 200)


def maybe_idempotent_json(
    db: Session,
    request: Request,
    *,
    company_id: Optional[int],
    body_hash: str,
    produce: Callable[[], Tuple[dict, int]],
) -> Tuple[dict, int]:
    """At-most-once execution for requests carrying ``Idempotency-Key``.

    - First use of a key: run ``produce``, store its response, return it.
    - Replay with the same body: return the stored response untouched.
    - Replay with a different body: 409.

    Keys are scoped per company, so two companies may use the same key.

    Only successful responses are stored; a ``ServiceError`` raised by
    ``produce`` propagates and the key stays unused.
    """
    key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip()
    if not key:
        return produce()
    method = (request.method or "").upper()
    path = request.url.path

    existing = _find(db, company_id, key[:128], method, path)
    if existing is not None:
        return _replay(existing, body_hash)

    content, status = produce()
    db.add(
        IdempotencyRecord(
            key=key[:128],
            method=method,
            path=path,
            body_hash=body_hash,
            company_id=company_id,
            status_code=int(status or 200),
            response_json=json.dumps(content, ensure_ascii=False, default=str),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        again = _find(db, company_id, key[:128], method, path)
        if again is None:
            raise
        logger.info("idempotency key raced, replaying stored response", extra={"path": path})
        return _replay(again, body_hash)
    return content, status


def purge_expired(db: Session, *, older_than: dt.timedelta = dt.timedelta(days=7)) -> int:
    cutoff = utc_now() - older_than
    deleted = db.query(IdempotencyRecord).filter(IdempotencyRecord.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    return int(deleted or 0)
