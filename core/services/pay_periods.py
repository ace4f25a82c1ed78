from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import PayPeriod

from .audit import record_event
from .auth import Actor

logger = logging.getLogger("hris_core.pay_periods")

PERIODS_PER_YEAR = {"SEMI_MONTHLY": 24, "MONTHLY": 12, "BI_WEEKLY": 26, "WEEKLY": 52}
HALVES = ("FIRST", "SECOND")


def _require_hr(actor: Actor) -> None:
    if not actor.is_hr:
        raise PermissionDenied("You do not have access to pay periods.")


def create_pay_period(
    session: Session,
    actor: Actor,
    *,
    pay_frequency: str,
    year: int,
    period_number: int,
    cutoff_start: dt.date,
    cutoff_end: dt.date,
    pay_date: dt.date,
    period_half: Optional[str] = None,
    working_days: Optional[int] = None,
) -> PayPeriod:
    _require_hr(actor)
    pay_frequency = (pay_frequency or "").upper()
    if pay_frequency not in PERIODS_PER_YEAR:
        raise ValidationFailed(f"Unsupported pay frequency: {pay_frequency}.")
    if cutoff_end < cutoff_start:
        raise ValidationFailed("Cutoff end must not be before cutoff start.")
    if pay_date < cutoff_start:
        raise ValidationFailed("Pay date must not be before the cutoff start.")
    if not 1 <= int(period_number) <= PERIODS_PER_YEAR[pay_frequency]:
        raise ValidationFailed("Period number is out of range for the pay frequency.")
    half = (period_half or "").upper() or None
    if half is None and pay_frequency == "SEMI_MONTHLY":
        half = "FIRST" if int(period_number) % 2 == 1 else "SECOND"
    if half is not None and half not in HALVES:
        raise ValidationFailed("Period half must be FIRST or SECOND.")

    period = PayPeriod(
        company_id=actor.company_id,
        pay_frequency=pay_frequency,
        periods_per_year=PERIODS_PER_YEAR[pay_frequency],
        year=int(year),
        period_number=int(period_number),
        period_half=half,
        cutoff_start=cutoff_start,
        cutoff_end=cutoff_end,
        pay_date=pay_date,
        working_days=working_days,
        status="OPEN",
    )
    session.add(period)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("A pay period with this number already exists.") from exc
    logger.info("pay period created", extra={"company_id": actor.company_id})
    record_event(
        session,
        actor=actor.label,
        action="CREATE_PAY_PERIOD",
        resource=f"pay_period:{period.id}",
        company_id=actor.company_id,
        meta={"year": period.year, "period_number": period.period_number, "pay_frequency": pay_frequency},
    )
    return period


def get_pay_period(session: Session, actor: Actor, period_id: int) -> PayPeriod:
    period = session.get(PayPeriod, int(period_id))
    if period is None or period.company_id != actor.company_id:
        raise NotFound("Pay period not found for active company.")
    return period


def list_pay_periods(session: Session, actor: Actor, *, year: Optional[int] = None, status: Optional[str] = None) -> list[PayPeriod]:
    _require_hr(actor)
    q = session.query(PayPeriod).filter(PayPeriod.company_id == actor.company_id)
    if year:
        q = q.filter(PayPeriod.year == int(year))
    if status:
        q = q.filter(PayPeriod.status == status.upper())
    return q.order_by(PayPeriod.cutoff_start.desc(), PayPeriod.id.desc()).all()


def pay_period_to_dict(period: PayPeriod) -> dict[str, Any]:
    return {
        "id": period.id,
        "pay_frequency": period.pay_frequency,
        "periods_per_year": period.periods_per_year,
        "year": period.year,
        "period_number": period.period_number,
        "period_half": period.period_half,
        "cutoff_start": period.cutoff_start.isoformat(),
        "cutoff_end": period.cutoff_end.isoformat(),
        "pay_date": period.pay_date.isoformat(),
        "working_days": period.working_days,
        "status": period.status,
    }
