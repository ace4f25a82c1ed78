from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.models import AuditEvent

logger = logging.getLogger("hris_core.audit")


def actor_label(user_id: Optional[int]) -> str:
    return f"user:{user_id}" if user_id else "system"


def record_event(
    db: Session,
    *,
    actor: str,
    action: str,
    resource: str = "",
    company_id: Optional[int] = None,
    ip: str = "",
    ua: str = "",
    result: str = "ok",
    meta: Optional[dict[str, Any]] = None,
) -> None:
    """Persist an audit event with best-effort durability.

    Writes through an independent short-lived session and commits at once,
    so the trail survives when the caller's transaction is rolled back. If
    that fails, the caller's session is used; failing that, the event is
    emitted as a structured log line.
    """
    payload = {
        "actor": str(actor or "unknown")[:120],
        "action": str(action or "event")[:80],
        "resource": str(resource or "")[:255],
        "company_id": company_id,
        "ip": str(ip or "")[:64],
        "ua": str(ua or "")[:255],
        "result": str(result or "ok")[:40],
        "meta_json": json.dumps(meta or {}, ensure_ascii=False, default=str),
    }
    try:
        from core.db import get_sessionmaker  # lazy import to avoid cycles

        s = get_sessionmaker()()
        try:
            s.add(AuditEvent(**payload))
            s.commit()
            return
        except SQLAlchemyError:
            s.rollback()
            raise
        finally:
            s.close()
    except SQLAlchemyError:
        logger.debug("independent audit session failed, using caller session", exc_info=True)

    try:
        db.add(AuditEvent(**payload))
        db.flush()
    except SQLAlchemyError:
        logger.info(
            "audit_fallback",
            extra={
                "event": payload["action"],
                "actor": payload["actor"],
                "company_id": payload["company_id"],
                "resource": payload["resource"],
                "result": payload["result"],
                "meta": meta or {},
            },
        )
