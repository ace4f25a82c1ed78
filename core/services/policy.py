from __future__ import annotations

import copy
import json
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.models import PolicySetting, PolicySettingHistory

logger = logging.getLogger("hris_core.policy")

DEFAULT_POLICY: dict[str, Any] = {
    # When each government contribution is taken on semi-monthly payrolls.
    "statutory_schedule": {
        "sss": "SECOND_HALF",
        "philhealth": "FIRST_HALF",
        "pagibig": "FIRST_HALF",
        "withholding_tax": "EVERY_PERIOD",
    },
    # Labor Code premium multipliers applied to the hourly rate.
    "overtime_multipliers": {
        "REGULAR_OT": "1.25",
        "REST_DAY_OT": "1.30",
        "SPECIAL_HOLIDAY_OT": "1.69",
        "REGULAR_HOLIDAY_OT": "2.60",
        "REST_DAY_HOLIDAY_OT": "3.38",
    },
    # basis: PER_MINUTE | PER_15_MINS | PER_30_MINS | PER_HOUR | DAILY_RATE
    "attendance_rules": {
        "TARDINESS": {"basis": "PER_MINUTE", "threshold_mins": 0},
        "UNDERTIME": {"basis": "PER_MINUTE", "threshold_mins": 0},
    },
    # BASIC_EARNED_TO_DATE | GROSS_EARNED_TO_DATE
    "thirteenth_month": {"formula": "BASIC_EARNED_TO_DATE"},
    "night_diff": {"rate": None},
}

_TIMINGS = {"EVERY_PERIOD", "FIRST_HALF", "SECOND_HALF", "DISABLED"}


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


def _load_row(session: Session, company_id: Optional[int], year: int) -> Optional[PolicySetting]:
    q = session.query(PolicySetting).order_by(PolicySetting.id.desc())
    if company_id is not None:
        row = q.filter(PolicySetting.company_id == int(company_id), PolicySetting.year == int(year)).first()
        if row:
            return row
    return q.filter(PolicySetting.company_id.is_(None), PolicySetting.year == int(year)).first()


def get_policy(session: Session, company_id: int | None, year: int | None) -> dict[str, Any]:
    """Effective payroll policy for a company/year.

    Stored sections overlay the defaults key by key; a company row wins over
    the global (company_id NULL) row. Malformed JSON falls back to defaults.
    """
    base = copy.deepcopy(DEFAULT_POLICY)
    row = _load_row(session, company_id, int(year or 0))
    if not row:
        return base
    try:
        stored = json.loads(row.policy_json or "{}")
    except ValueError:
        logger.warning("policy_json unreadable for company=%s year=%s", company_id, year)
        return base
    if isinstance(stored, dict):
        _merge(base, stored)
    return base


def validate_policy(policy: dict[str, Any]) -> list[str]:
    """Return human-readable problems; empty when the overlay is usable."""
    problems: list[str] = []
    schedule = policy.get("statutory_schedule") or {}
    if not isinstance(schedule, dict):
        problems.append("statutory_schedule must be an object")
    else:
        for key, timing in schedule.items():
            if str(timing).upper() not in _TIMINGS:
                problems.append(f"statutory_schedule.{key} has unknown timing {timing!r}")
    formula = ((policy.get("thirteenth_month") or {}).get("formula") or "BASIC_EARNED_TO_DATE")
    if str(formula).upper() not in {"BASIC_EARNED_TO_DATE", "GROSS_EARNED_TO_DATE"}:
        problems.append(f"thirteenth_month.formula {formula!r} is not supported")
    return problems


def set_policy(
    session: Session,
    company_id: int | None,
    year: int,
    policy: dict[str, Any],
    *,
    actor: str,
) -> dict[str, Any]:
    """Replace the stored overlay and keep an audit copy of the previous one."""
    row = (
        session.query(PolicySetting)
        .filter(
            PolicySetting.company_id.is_(None) if company_id is None else PolicySetting.company_id == int(company_id),
            PolicySetting.year == int(year),
        )
        .first()
    )
    new_json = json.dumps(policy, ensure_ascii=False, sort_keys=True)
    old_json = row.policy_json if row else "{}"
    if row is None:
        row = PolicySetting(company_id=company_id, year=int(year), policy_json=new_json)
        session.add(row)
    else:
        row.policy_json = new_json
    session.add(
        PolicySettingHistory(actor=actor, company_id=company_id, year=int(year), old_json=old_json, new_json=new_json)
    )
    session.flush()
    return get_policy(session, company_id, year)
