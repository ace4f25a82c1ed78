from __future__ import annotations

import datetime as dt

import pytest

from core.errors import Conflict, PermissionDenied, ValidationFailed
from core.services import pay_periods


def _create(session, actor, **overrides):
    params = dict(
        pay_frequency="SEMI_MONTHLY",
        year=2026,
        period_number=1,
        cutoff_start=dt.date(2026, 1, 1),
        cutoff_end=dt.date(2026, 1, 15),
        pay_date=dt.date(2026, 1, 20),
    )
    params.update(overrides)
    return pay_periods.create_pay_period(session, actor, **params)


def test_semi_monthly_half_is_derived_from_period_number(session, hr):
    first = _create(session, hr)
    second = _create(
        session,
        hr,
        period_number=2,
        cutoff_start=dt.date(2026, 1, 16),
        cutoff_end=dt.date(2026, 1, 31),
        pay_date=dt.date(2026, 2, 5),
    )
    assert first.period_half == "FIRST"
    assert second.period_half == "SECOND"
    assert first.periods_per_year == 24
    assert first.status == "OPEN"


def test_duplicate_period_number_conflicts(session, hr):
    _create(session, hr)
    with pytest.raises(Conflict):
        _create(session, hr)


def test_rejects_inverted_cutoff(session, hr):
    with pytest.raises(ValidationFailed):
        _create(session, hr, cutoff_start=dt.date(2026, 1, 15), cutoff_end=dt.date(2026, 1, 1))


def test_rejects_period_number_out_of_range(session, hr):
    with pytest.raises(ValidationFailed):
        _create(session, hr, pay_frequency="MONTHLY", period_number=13)


def test_employees_cannot_manage_periods(session, staff):
    with pytest.raises(PermissionDenied):
        _create(session, staff)


def test_list_and_serialize(session, hr):
    period = _create(session, hr)
    rows = pay_periods.list_pay_periods(session, hr, year=2026)
    assert [p.id for p in rows] == [period.id]
    data = pay_periods.pay_period_to_dict(period)
    assert data["cutoff_start"] == "2026-01-01"
    assert data["period_half"] == "FIRST"
