from __future__ import annotations

import datetime as dt
from decimal import Decimal
from types import SimpleNamespace

import pytest

from core.errors import ValidationFailed
from core.services import statutory


def _tax_row(over, not_over, base, rate):
    return SimpleNamespace(
        bracket_over=Decimal(str(over)),
        bracket_not_over=Decimal(str(not_over)) if not_over is not None else None,
        base_tax=Decimal(str(base)),
        tax_rate=Decimal(str(rate)),
        excess_over=Decimal(str(over)),
    )


def _rows(dicts):
    return [SimpleNamespace(**d) for d in dicts]


@pytest.mark.parametrize(
    "timing,freq,half,expected",
    [
        ("DISABLED", "SEMI_MONTHLY", "FIRST", False),
        ("EVERY_PERIOD", "SEMI_MONTHLY", "SECOND", True),
        (None, "SEMI_MONTHLY", "FIRST", True),
        ("FIRST_HALF", "SEMI_MONTHLY", "FIRST", True),
        ("FIRST_HALF", "SEMI_MONTHLY", "SECOND", False),
        ("SECOND_HALF", "SEMI_MONTHLY", "FIRST", False),
        ("SECOND_HALF", "SEMI_MONTHLY", "SECOND", True),
        ("SECOND_HALF", "MONTHLY", None, True),
        ("FIRST_HALF", "WEEKLY", None, True),
    ],
)
def test_should_apply(timing, freq, half, expected):
    assert statutory.should_apply(timing, freq, half) is expected


def test_sss_lookup_includes_wisp_portion():
    rows = _rows(statutory.default_sss_rows())
    share = statutory.compute_sss(rows, Decimal("30000"))
    assert share.matched
    assert share.employee == Decimal("1500.00")
    assert share.employer == Decimal("3000.00")


def test_sss_floor_and_ceiling_rows():
    rows = _rows(statutory.default_sss_rows())
    low = statutory.compute_sss(rows, Decimal("3000"))
    assert (low.employee, low.employer) == (Decimal("250.00"), Decimal("500.00"))
    high = statutory.compute_sss(rows, Decimal("50000"))
    assert (high.employee, high.employer) == (Decimal("1750.00"), Decimal("3500.00"))


def test_sss_no_bracket_means_unmatched_zero():
    share = statutory.compute_sss([], Decimal("30000"))
    assert not share.matched
    assert share.employee == Decimal("0")


def test_philhealth_clamps_to_floor_and_ceiling():
    row = _rows(statutory.default_philhealth_rows())[0]
    assert statutory.compute_philhealth(row, Decimal("30000")).employee == Decimal("750.00")
    assert statutory.compute_philhealth(row, Decimal("5000")).employee == Decimal("250.00")
    top = statutory.compute_philhealth(row, Decimal("200000"))
    assert top.employee == Decimal("2500.00")
    assert top.employer == Decimal("2500.00")
    assert statutory.compute_philhealth(None, Decimal("30000")).matched is False


def test_pagibig_brackets_and_max_compensation():
    rows = _rows(statutory.default_pagibig_rows())
    low = statutory.compute_pagibig(rows, Decimal("1000"))
    assert (low.employee, low.employer) == (Decimal("10.00"), Decimal("20.00"))
    capped = statutory.compute_pagibig(rows, Decimal("30000"))
    assert (capped.employee, capped.employer) == (Decimal("200.00"), Decimal("200.00"))


def test_semi_monthly_bracket_tax():
    rows = _rows(statutory.default_tax_rows("SEMI_MONTHLY"))
    assert statutory.compute_bracket_tax(rows, Decimal("10000")) == Decimal("0.00")
    assert statutory.compute_bracket_tax(rows, Decimal("15000")) == Decimal("687.50")


def test_bracket_tax_without_rows_is_none():
    assert statutory.compute_bracket_tax([], Decimal("15000")) is None


def test_annual_tax_train_brackets():
    rows = [
        _tax_row(0, 250000, 0, "0"),
        _tax_row(250000, 400000, 0, "0.15"),
        _tax_row(400000, 800000, 22500, "0.20"),
        _tax_row(800000, None, 102500, "0.25"),
    ]
    assert statutory.compute_annual_tax(rows, Decimal("250000")) == Decimal("0.00")
    assert statutory.compute_annual_tax(rows, Decimal("500000")) == Decimal("42500.00")
    assert statutory.compute_annual_tax(rows, Decimal("0")) == Decimal("0")
    assert statutory.compute_annual_tax([], Decimal("500000")) == Decimal("0")


def test_annualized_withholding_subtracts_prior_tax():
    rows = _rows(statutory.default_tax_rows("ANNUAL"))
    tax = statutory.compute_annualized_withholding(
        rows,
        prior_gross=Decimal("480000"),
        current_gross=Decimal("40000"),
        prior_contributions=Decimal("0"),
        current_contributions=Decimal("0"),
        prior_bonus=Decimal("0"),
        prior_pre_tax=Decimal("0"),
        current_pre_tax=Decimal("0"),
        prior_withheld=Decimal("30000"),
    )
    # 520,000 annual taxable: 22,500 + 120,000 * 20% = 46,500
    assert tax == Decimal("16500.00")


def test_annualized_withholding_never_negative():
    rows = _rows(statutory.default_tax_rows("ANNUAL"))
    tax = statutory.compute_annualized_withholding(
        rows,
        prior_gross=Decimal("100000"),
        current_gross=Decimal("10000"),
        prior_contributions=Decimal("0"),
        current_contributions=Decimal("0"),
        prior_bonus=Decimal("0"),
        prior_pre_tax=Decimal("0"),
        current_pre_tax=Decimal("0"),
        prior_withheld=Decimal("5000"),
    )
    assert tax == Decimal("0.00")


def test_substituted_filing_flat_rate():
    assert statutory.substituted_filing_tax(Decimal("10000")) == Decimal("800.00")


def test_seeded_tables_are_active_for_cutoff(session, statutory_tables):
    tables = statutory_tables
    assert len(tables.sss) == 61
    assert tables.philhealth is not None
    assert len(tables.pagibig) == 2
    assert tables.tax_semi_monthly and tables.tax_monthly and tables.tax_annual
    # Annual rows are only picked up for their own year.
    later = statutory.active_tables(session, dt.date(2027, 3, 1))
    assert later.tax_annual == []


def test_upsert_rejects_empty_table(session):
    with pytest.raises(ValidationFailed):
        statutory.upsert_statutory_tables(
            session,
            effective_from=dt.date(2026, 1, 1),
            sss_rows=[],
            philhealth_rows=statutory.default_philhealth_rows(),
            pagibig_rows=statutory.default_pagibig_rows(),
            tax_rows=statutory.default_tax_rows("SEMI_MONTHLY"),
        )


def test_upsert_supersedes_previous_version(session, statutory_tables):
    rows = statutory.default_philhealth_rows()
    rows[0]["premium_rate"] = Decimal("0.06")
    message = statutory.upsert_statutory_tables(
        session,
        effective_from=dt.date(2026, 7, 1),
        sss_rows=statutory.default_sss_rows(),
        philhealth_rows=rows,
        pagibig_rows=statutory.default_pagibig_rows(),
        tax_rows=statutory.default_tax_rows("SEMI_MONTHLY"),
        actor="test",
    )
    assert message == "Statutory tables saved successfully."
    tables = statutory.active_tables(session, dt.date(2026, 7, 15))
    assert statutory.compute_philhealth(tables.philhealth, Decimal("30000")).employee == Decimal("900.00")
    # Annual tax rows were loaded separately and stay in force.
    assert tables.tax_annual


def test_missing_table_warnings_follow_schedule(session):
    tables = statutory.active_tables(session, dt.date(2026, 1, 15))
    schedule = {"sss": "SECOND_HALF", "philhealth": "FIRST_HALF", "pagibig": "FIRST_HALF", "withholding_tax": "EVERY_PERIOD"}
    warnings = statutory.missing_table_warnings(tables, schedule, "SEMI_MONTHLY", "FIRST")
    text = " ".join(warnings)
    assert "PhilHealth" in text
    assert "SSS" not in text


def test_preview_contributions(session, statutory_tables):
    result = statutory.preview_contributions(
        session, monthly_base=Decimal("30000"), on_date=dt.date(2026, 1, 15), taxable=Decimal("15000")
    )
    assert result["sss"]["employee"] == "1500.00"
    assert result["philhealth"]["employee"] == "750.00"
    assert result["pagibig"]["employee"] == "200.00"
    assert result["withholding_tax"] == "687.50"
