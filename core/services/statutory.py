"""Government contribution tables and withholding tax.

Bracket math is kept free of database access so the payroll engine and
tests can call it with plain rows; the loaders at the bottom pick the
active, effectivity-dated rows for a cutoff.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.errors import ValidationFailed
from core.models import (
    PagIbigContributionTable,
    PhilHealthContributionTable,
    SssContributionTable,
    TaxTable,
)

from .audit import record_event
from .calculation import ZERO, round_currency, to_decimal

logger = logging.getLogger("hris_core.statutory")

TIMINGS = ("EVERY_PERIOD", "FIRST_HALF", "SECOND_HALF", "DISABLED")
SUBSTITUTED_FILING_RATE = Decimal("0.08")
# De minimis ceiling for 13th month and other bonuses under TRAIN.
BONUS_EXEMPTION_CAP = Decimal("90000")


@dataclass(frozen=True)
class ContributionShare:
    employee: Decimal = ZERO
    employer: Decimal = ZERO
    matched: bool = False


@dataclass
class ActiveTables:
    sss: list[SssContributionTable]
    philhealth: Optional[PhilHealthContributionTable]
    pagibig: list[PagIbigContributionTable]
    tax_semi_monthly: list[TaxTable]
    tax_monthly: list[TaxTable]
    tax_annual: list[TaxTable]

    def tax_rows_for(self, pay_frequency: str) -> list[TaxTable]:
        return self.tax_semi_monthly if pay_frequency == "SEMI_MONTHLY" else self.tax_monthly


def should_apply(timing: Optional[str], pay_frequency: str, period_half: Optional[str]) -> bool:
    """Whether a contribution scheduled at ``timing`` is taken this period."""
    value = (timing or "EVERY_PERIOD").upper()
    if value == "DISABLED":
        return False
    if value == "EVERY_PERIOD":
        return True
    if pay_frequency != "SEMI_MONTHLY":
        return True
    if value == "FIRST_HALF":
        return period_half == "FIRST"
    if value == "SECOND_HALF":
        return period_half == "SECOND"
    return True


def compute_sss(brackets: Iterable[Any], monthly_base: Decimal) -> ContributionShare:
    base = to_decimal(monthly_base)
    for row in brackets:
        if to_decimal(row.range_start) <= base <= to_decimal(row.range_end):
            return ContributionShare(
                employee=round_currency(to_decimal(row.employee_share) + to_decimal(row.wisp_employee)),
                employer=round_currency(to_decimal(row.employer_share) + to_decimal(row.wisp_employer)),
                matched=True,
            )
    return ContributionShare()


def compute_philhealth(row: Any, monthly_base: Decimal) -> ContributionShare:
    if row is None:
        return ContributionShare()
    base = min(max(to_decimal(monthly_base), to_decimal(row.monthly_floor)), to_decimal(row.monthly_ceiling))
    premium = base * to_decimal(row.premium_rate)
    return ContributionShare(
        employee=round_currency(premium * to_decimal(row.employee_share_rate)),
        employer=round_currency(premium * to_decimal(row.employer_share_rate)),
        matched=True,
    )


def compute_pagibig(brackets: Iterable[Any], monthly_base: Decimal) -> ContributionShare:
    base = to_decimal(monthly_base)
    for row in brackets:
        if to_decimal(row.salary_bracket_min) <= base <= to_decimal(row.salary_bracket_max):
            comp = min(base, to_decimal(row.max_monthly_comp))
            return ContributionShare(
                employee=round_currency(comp * to_decimal(row.employee_rate)),
                employer=round_currency(comp * to_decimal(row.employer_rate)),
                matched=True,
            )
    return ContributionShare()


def _bracket_matches(row: Any, amount: Decimal) -> bool:
    if amount < to_decimal(row.bracket_over):
        return False
    ceiling = row.bracket_not_over
    return ceiling is None or amount <= to_decimal(ceiling)


def _apply_bracket(row: Any, amount: Decimal) -> Decimal:
    tax = to_decimal(row.base_tax) + (amount - to_decimal(row.excess_over)) * to_decimal(row.tax_rate)
    return round_currency(max(tax, ZERO))


def compute_bracket_tax(rows: Sequence[Any], taxable: Decimal) -> Optional[Decimal]:
    """Per-period withholding; None when no bracket covers ``taxable``."""
    amount = to_decimal(taxable)
    for row in rows:
        if _bracket_matches(row, amount):
            return _apply_bracket(row, amount)
    return None


def compute_annual_tax(rows: Sequence[Any], annual_taxable: Decimal) -> Decimal:
    amount = to_decimal(annual_taxable)
    if amount <= 0 or not rows:
        return ZERO
    ordered = sorted(rows, key=lambda r: to_decimal(r.bracket_over))
    matched = next((row for row in ordered if _bracket_matches(row, amount)), ordered[-1])
    return _apply_bracket(matched, amount)


def compute_annualized_withholding(
    annual_rows: Sequence[Any],
    *,
    prior_gross: Decimal,
    current_gross: Decimal,
    prior_contributions: Decimal,
    current_contributions: Decimal,
    prior_bonus: Decimal,
    prior_pre_tax: Decimal,
    current_pre_tax: Decimal,
    prior_withheld: Decimal,
) -> Decimal:
    """Cumulative method: tax on year-to-date taxable less tax already withheld."""
    annual_taxable = max(
        ZERO,
        to_decimal(prior_gross)
        + to_decimal(current_gross)
        - (to_decimal(prior_contributions) + to_decimal(current_contributions))
        - min(BONUS_EXEMPTION_CAP, to_decimal(prior_bonus))
        - (to_decimal(prior_pre_tax) + to_decimal(current_pre_tax)),
    )
    annual_tax = compute_annual_tax(annual_rows, annual_taxable)
    return round_currency(max(ZERO, annual_tax - to_decimal(prior_withheld)))


def substituted_filing_tax(taxable: Decimal) -> Decimal:
    return round_currency(to_decimal(taxable) * SUBSTITUTED_FILING_RATE)


# --------------------------------------------------------------------------
# Loading
# --------------------------------------------------------------------------


def _effective_on(model, on_date: dt.date):
    return (
        model.is_active.is_(True),
        model.effective_from <= on_date,
        or_(model.effective_to.is_(None), model.effective_to >= on_date),
    )


def active_tables(session: Session, on_date: dt.date) -> ActiveTables:
    sss = (
        session.query(SssContributionTable)
        .filter(*_effective_on(SssContributionTable, on_date))
        .order_by(SssContributionTable.range_start.asc())
        .all()
    )
    philhealth = (
        session.query(PhilHealthContributionTable)
        .filter(*_effective_on(PhilHealthContributionTable, on_date))
        .order_by(PhilHealthContributionTable.effective_from.desc(), PhilHealthContributionTable.id.desc())
        .first()
    )
    pagibig = (
        session.query(PagIbigContributionTable)
        .filter(*_effective_on(PagIbigContributionTable, on_date))
        .order_by(PagIbigContributionTable.salary_bracket_min.asc())
        .all()
    )
    tax_rows = (
        session.query(TaxTable)
        .filter(*_effective_on(TaxTable, on_date))
        .order_by(TaxTable.table_type.asc(), TaxTable.bracket_over.asc())
        .all()
    )
    return ActiveTables(
        sss=sss,
        philhealth=philhealth,
        pagibig=pagibig,
        tax_semi_monthly=[r for r in tax_rows if r.table_type == "SEMI_MONTHLY"],
        tax_monthly=[r for r in tax_rows if r.table_type == "MONTHLY"],
        tax_annual=[r for r in tax_rows if r.table_type == "ANNUAL" and r.effective_year == on_date.year],
    )


def missing_table_warnings(
    tables: ActiveTables, schedule: Mapping[str, str], pay_frequency: str, period_half: Optional[str]
) -> list[str]:
    """Warnings for statutory tables that apply this cutoff but have no active rows."""
    warnings: list[str] = []
    if should_apply(schedule.get("sss"), pay_frequency, period_half) and not tables.sss:
        warnings.append("No active SSS statutory table matched this payroll cutoff; SSS deductions may be zero.")
    if should_apply(schedule.get("philhealth"), pay_frequency, period_half) and tables.philhealth is None:
        warnings.append(
            "No active PhilHealth statutory table matched this payroll cutoff; PhilHealth deductions may be zero."
        )
    if should_apply(schedule.get("pagibig"), pay_frequency, period_half) and not tables.pagibig:
        warnings.append(
            "No active Pag-IBIG statutory table matched this payroll cutoff; Pag-IBIG deductions may be zero."
        )
    if should_apply(schedule.get("withholding_tax"), pay_frequency, period_half):
        if not tables.tax_annual and not tables.tax_rows_for(pay_frequency):
            warnings.append("No active withholding tax table matched this payroll cutoff/frequency; WTAX may be zero.")
    return warnings


# --------------------------------------------------------------------------
# Maintenance
# --------------------------------------------------------------------------


def _manual_version(now: Optional[dt.datetime] = None) -> str:
    stamp = (now or dt.datetime.now(dt.UTC)).strftime("%Y%m%d%H%M%S")
    return f"MANUAL_{stamp}"


def _deactivate(session: Session, model, effective_from: dt.date, *extra) -> int:
    return (
        session.query(model)
        .filter(model.is_active.is_(True), *extra)
        .update({model.is_active: False, model.effective_to: effective_from}, synchronize_session=False)
    )


def upsert_statutory_tables(
    session: Session,
    *,
    effective_from: dt.date,
    sss_rows: Sequence[Mapping[str, Any]],
    philhealth_rows: Sequence[Mapping[str, Any]],
    pagibig_rows: Sequence[Mapping[str, Any]],
    tax_rows: Sequence[Mapping[str, Any]],
    actor: str = "system",
    company_id: Optional[int] = None,
    table_type: str = "SEMI_MONTHLY",
) -> str:
    """Replace the active statutory tables with a new effectivity-dated set.

    Only tax rows of ``table_type`` are superseded so annual and monthly
    tables loaded separately stay active.
    """
    if not (sss_rows and philhealth_rows and pagibig_rows and tax_rows):
        raise ValidationFailed("Every statutory table needs at least one row.")
    version = _manual_version()
    year = effective_from.year

    _deactivate(session, SssContributionTable, effective_from)
    _deactivate(session, PhilHealthContributionTable, effective_from)
    _deactivate(session, PagIbigContributionTable, effective_from)
    _deactivate(session, TaxTable, effective_from, TaxTable.table_type == table_type)

    for row in sss_rows:
        session.add(SssContributionTable(version=version, effective_from=effective_from, is_active=True, **row))
    for row in philhealth_rows:
        session.add(PhilHealthContributionTable(version=version, effective_from=effective_from, is_active=True, **row))
    for row in pagibig_rows:
        session.add(PagIbigContributionTable(version=version, effective_from=effective_from, is_active=True, **row))
    for row in tax_rows:
        session.add(
            TaxTable(
                version=version,
                table_type=table_type,
                effective_year=year,
                effective_from=effective_from,
                is_active=True,
                **row,
            )
        )
    session.commit()
    logger.info("statutory tables replaced version=%s effective_from=%s", version, effective_from)
    record_event(
        session,
        actor=actor,
        action="STATUTORY_TABLES_UPDATED",
        resource="statutory_tables",
        company_id=company_id,
        meta={
            "version": version,
            "effective_from": effective_from.isoformat(),
            "sss_rows": len(sss_rows),
            "philhealth_rows": len(philhealth_rows),
            "pagibig_rows": len(pagibig_rows),
            "tax_rows": len(tax_rows),
        },
    )
    return "Statutory tables saved successfully."


def _d(value: str | int) -> Decimal:
    return Decimal(str(value))


def default_sss_rows() -> list[dict[str, Decimal]]:
    """2025 SSS schedule: 5% employee / 10% employer on MSC 5,000..35,000.

    Employer EC is 10 below MSC 15,000 and 30 from there. Credits above
    20,000 go to the WISP (MPF) portion.
    """
    rows: list[dict[str, Decimal]] = []
    msc = 5000
    while msc <= 35000:
        start = _d(0) if msc == 5000 else _d(msc - 250)
        end = _d("999999999.99") if msc == 35000 else _d(f"{msc + 249}.99")
        regular_msc = min(msc, 20000)
        wisp_msc = max(msc - 20000, 0)
        ec = _d(10) if msc < 15000 else _d(30)
        ee = _d(regular_msc) * _d("0.05")
        er = _d(regular_msc) * _d("0.10")
        wisp_ee = _d(wisp_msc) * _d("0.05")
        wisp_er = _d(wisp_msc) * _d("0.10")
        rows.append(
            {
                "range_start": start,
                "range_end": end,
                "monthly_salary_credit": _d(msc),
                "employee_share": round_currency(ee),
                "employer_share": round_currency(er),
                "ec_contribution": ec,
                "total_contribution": round_currency(ee + er + ec + wisp_ee + wisp_er),
                "wisp_employee": round_currency(wisp_ee),
                "wisp_employer": round_currency(wisp_er),
            }
        )
        msc += 500
    return rows


def default_philhealth_rows() -> list[dict[str, Any]]:
    return [
        {
            "premium_rate": _d("0.05"),
            "monthly_floor": _d(10000),
            "monthly_ceiling": _d(100000),
            "employee_share_rate": _d("0.5"),
            "employer_share_rate": _d("0.5"),
            "membership_category": "EMPLOYED",
        }
    ]


def default_pagibig_rows() -> list[dict[str, Decimal]]:
    return [
        {
            "salary_bracket_min": _d(0),
            "salary_bracket_max": _d(1500),
            "employee_rate": _d("0.01"),
            "employer_rate": _d("0.02"),
            "max_monthly_comp": _d(10000),
        },
        {
            "salary_bracket_min": _d("1500.01"),
            "salary_bracket_max": _d("999999999.99"),
            "employee_rate": _d("0.02"),
            "employer_rate": _d("0.02"),
            "max_monthly_comp": _d(10000),
        },
    ]


# TRAIN law rates effective 2023 onwards: (over, not_over, base tax, rate)
_ANNUAL_BRACKETS = (
    (0, 250000, 0, "0"),
    (250000, 400000, 0, "0.15"),
    (400000, 800000, 22500, "0.20"),
    (800000, 2000000, 102500, "0.25"),
    (2000000, 8000000, 402500, "0.30"),
    (8000000, None, 2202500, "0.35"),
)


def default_tax_rows(table_type: str) -> list[dict[str, Any]]:
    divisor = {"ANNUAL": 1, "MONTHLY": 12, "SEMI_MONTHLY": 24}[table_type]
    rows: list[dict[str, Any]] = []
    for over, not_over, base, rate in _ANNUAL_BRACKETS:
        over_d = round_currency(_d(over) / divisor)
        rows.append(
            {
                "bracket_over": over_d,
                "bracket_not_over": round_currency(_d(not_over) / divisor) if not_over is not None else None,
                "base_tax": round_currency(_d(base) / divisor),
                "tax_rate": _d(rate),
                "excess_over": over_d,
            }
        )
    return rows


def seed_default_tables(session: Session, effective_from: dt.date, *, actor: str = "system") -> str:
    """Load the bundled statutory tables, including monthly and annual tax rows."""
    message = upsert_statutory_tables(
        session,
        effective_from=effective_from,
        sss_rows=default_sss_rows(),
        philhealth_rows=default_philhealth_rows(),
        pagibig_rows=default_pagibig_rows(),
        tax_rows=default_tax_rows("SEMI_MONTHLY"),
        actor=actor,
    )
    version = _manual_version()
    for table_type in ("MONTHLY", "ANNUAL"):
        _deactivate(session, TaxTable, effective_from, TaxTable.table_type == table_type)
        for row in default_tax_rows(table_type):
            session.add(
                TaxTable(
                    version=version,
                    table_type=table_type,
                    effective_year=effective_from.year,
                    effective_from=effective_from,
                    is_active=True,
                    **row,
                )
            )
    session.commit()
    return message


# --------------------------------------------------------------------------
# Read-side helpers
# --------------------------------------------------------------------------


def _row_dict(row: Any, fields: Sequence[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in fields:
        value = getattr(row, name)
        out[name] = str(value) if isinstance(value, Decimal) else value
    return out


def tables_to_dict(tables: ActiveTables) -> dict[str, Any]:
    tax_fields = ("bracket_over", "bracket_not_over", "base_tax", "tax_rate", "excess_over")
    return {
        "sss": [
            _row_dict(r, ("range_start", "range_end", "monthly_salary_credit", "employee_share", "employer_share", "ec_contribution", "total_contribution"))
            for r in tables.sss
        ],
        "philhealth": _row_dict(
            tables.philhealth,
            ("premium_rate", "monthly_floor", "monthly_ceiling", "employee_share_rate", "employer_share_rate"),
        )
        if tables.philhealth is not None
        else None,
        "pagibig": [
            _row_dict(r, ("salary_bracket_min", "salary_bracket_max", "employee_rate", "employer_rate", "max_monthly_comp"))
            for r in tables.pagibig
        ],
        "tax": {
            "SEMI_MONTHLY": [_row_dict(r, tax_fields) for r in tables.tax_semi_monthly],
            "MONTHLY": [_row_dict(r, tax_fields) for r in tables.tax_monthly],
            "ANNUAL": [_row_dict(r, tax_fields) for r in tables.tax_annual],
        },
    }


def preview_contributions(
    session: Session,
    *,
    monthly_base: Decimal,
    on_date: dt.date,
    taxable: Optional[Decimal] = None,
    table_type: str = "SEMI_MONTHLY",
) -> dict[str, Any]:
    """Contributions and bracket tax for one salary against the active tables."""
    tables = active_tables(session, on_date)
    sss = compute_sss(tables.sss, monthly_base)
    philhealth = compute_philhealth(tables.philhealth, monthly_base)
    pagibig = compute_pagibig(tables.pagibig, monthly_base)
    rows = {"SEMI_MONTHLY": tables.tax_semi_monthly, "MONTHLY": tables.tax_monthly, "ANNUAL": tables.tax_annual}[table_type]
    tax = compute_bracket_tax(rows, taxable) if taxable is not None else None

    def share(value: ContributionShare) -> dict[str, Any]:
        return {"employee": str(value.employee), "employer": str(value.employer), "matched": value.matched}

    return {
        "on_date": on_date.isoformat(),
        "monthly_base": str(round_currency(monthly_base)),
        "sss": share(sss),
        "philhealth": share(philhealth),
        "pagibig": share(pagibig),
        "withholding_tax": str(round_currency(tax)) if tax is not None else None,
        "table_type": table_type,
    }
