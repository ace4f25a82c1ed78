from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

from hypothesis import given
from hypothesis import strategies as st

from core.services import statutory
from core.services.calculation import round_currency

SSS_ROWS = [SimpleNamespace(**r) for r in statutory.default_sss_rows()]
PAGIBIG_ROWS = [SimpleNamespace(**r) for r in statutory.default_pagibig_rows()]
PHILHEALTH_ROW = SimpleNamespace(**statutory.default_philhealth_rows()[0])
ANNUAL_ROWS = [SimpleNamespace(**r) for r in statutory.default_tax_rows("ANNUAL")]
SEMI_MONTHLY_ROWS = [SimpleNamespace(**r) for r in statutory.default_tax_rows("SEMI_MONTHLY")]

salaries = st.integers(min_value=0, max_value=50_000_000).map(lambda cents: Decimal(cents) / 100)


@given(a=salaries, b=salaries)
def test_contributions_are_monotonic_in_salary(a, b):
    lo, hi = sorted((a, b))
    for compute in (
        lambda base: statutory.compute_sss(SSS_ROWS, base),
        lambda base: statutory.compute_pagibig(PAGIBIG_ROWS, base),
        lambda base: statutory.compute_philhealth(PHILHEALTH_ROW, base),
    ):
        assert compute(lo).employee <= compute(hi).employee
        assert compute(lo).employer <= compute(hi).employer


@given(a=salaries, b=salaries)
def test_annual_tax_is_monotonic_and_below_income(a, b):
    lo, hi = sorted((a, b))
    tax_lo = statutory.compute_annual_tax(ANNUAL_ROWS, lo)
    tax_hi = statutory.compute_annual_tax(ANNUAL_ROWS, hi)
    assert tax_lo <= tax_hi
    assert tax_hi <= max(hi, Decimal("0"))


@given(amount=salaries)
def test_every_salary_matches_a_bracket(amount):
    assert statutory.compute_sss(SSS_ROWS, amount).matched
    assert statutory.compute_pagibig(PAGIBIG_ROWS, round_currency(amount)).matched
    assert statutory.compute_bracket_tax(SEMI_MONTHLY_ROWS, round_currency(amount)) is not None
