from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


Money = Numeric(14, 2)
Quantity = Numeric(14, 4)
Rate = Numeric(10, 6)

ZERO = Decimal("0")


# --------------------------------------------------------------------------
# Organization
# --------------------------------------------------------------------------


class Company(Base):
    __tablename__ = "companies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True, index=True)
    tin: Mapped[str] = mapped_column(String(20), default="")
    # Rotating this invalidates every user token issued for the company.
    token_key: Mapped[str] = mapped_column(String(128), default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    users: Mapped[list["User"]] = relationship(back_populates="company", cascade="all, delete-orphan")
    departments: Mapped[list["Department"]] = relationship(back_populates="company", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), default="")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False, default="EMPLOYEE")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_request_approver: Mapped[bool] = mapped_column(Boolean, default=False)
    is_material_request_purchaser: Mapped[bool] = mapped_column(Boolean, default=False)
    is_material_request_poster: Mapped[bool] = mapped_column(Boolean, default=False)
    # Plain column: employees.supervisor_user_id already points back at users.
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    company: Mapped[Company] = relationship(back_populates="users")

    __table_args__ = (UniqueConstraint("company_id", "username", name="uq_user_company_username"),)


class Department(Base):
    __tablename__ = "departments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    company: Mapped[Company] = relationship(back_populates="departments")

    __table_args__ = (UniqueConstraint("company_id", "code", name="uq_department_company_code"),)


class Employee(Base):
    __tablename__ = "employees"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    employee_number: Mapped[str] = mapped_column(String(40), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id"), nullable=True, index=True)
    supervisor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    hire_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    separation_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    pay_frequency: Mapped[str] = mapped_column(String(20), default="SEMI_MONTHLY")
    # Comma-separated day names; NULL means no work schedule assigned.
    rest_days: Mapped[str | None] = mapped_column(String(120), nullable=True, default="SATURDAY,SUNDAY")
    is_overtime_eligible: Mapped[bool] = mapped_column(Boolean, default=True)
    is_night_diff_eligible: Mapped[bool] = mapped_column(Boolean, default=True)
    is_substituted_filing: Mapped[bool] = mapped_column(Boolean, default=False)
    has_thirteenth_month: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    department: Mapped[Optional[Department]] = relationship()
    salary: Mapped[Optional["EmployeeSalary"]] = relationship(
        back_populates="employee", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("company_id", "employee_number", name="uq_employee_company_number"),)

    @property
    def full_name(self) -> str:
        return f"{self.last_name}, {self.first_name}"


class EmployeeSalary(Base):
    __tablename__ = "employee_salaries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, unique=True)
    base_salary: Mapped[Decimal] = mapped_column(Money, nullable=False)
    salary_rate_type: Mapped[str] = mapped_column(String(20), default="MONTHLY")  # MONTHLY | DAILY
    daily_rate: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    monthly_divisor: Mapped[int] = mapped_column(Integer, default=365)
    hours_per_day: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("8"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    effective_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    employee: Mapped[Employee] = relationship(back_populates="salary")


# --------------------------------------------------------------------------
# Calendar and attendance
# --------------------------------------------------------------------------


class PayPeriod(Base):
    __tablename__ = "pay_periods"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    pay_frequency: Mapped[str] = mapped_column(String(20), default="SEMI_MONTHLY")
    periods_per_year: Mapped[int] = mapped_column(Integer, default=24)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    period_half: Mapped[str | None] = mapped_column(String(10), nullable=True)  # FIRST | SECOND
    cutoff_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    cutoff_end: Mapped[dt.date] = mapped_column(Date, nullable=False)
    pay_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    working_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="OPEN")  # OPEN | LOCKED
    locked_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("company_id", "pay_frequency", "year", "period_number", name="uq_pay_period_number"),
        Index("ix_pay_period_cutoff", "company_id", "cutoff_start", "cutoff_end"),
    )


class Holiday(Base):
    __tablename__ = "holidays"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id"), nullable=True, index=True)
    holiday_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    # REGULAR | SPECIAL_NON_WORKING | SPECIAL_WORKING
    holiday_type: Mapped[str] = mapped_column(String(30), default="REGULAR")
    pay_multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("2.00"))


class DailyTimeRecord(Base):
    __tablename__ = "daily_time_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    attendance_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    # PRESENT | ABSENT | ON_LEAVE | REST_DAY | HOLIDAY
    attendance_status: Mapped[str] = mapped_column(String(20), default="PRESENT")
    approval_status: Mapped[str] = mapped_column(String(20), default="APPROVED")
    time_in: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    time_out: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    hours_worked: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=ZERO)
    overtime_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=ZERO)
    night_diff_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=ZERO)
    tardiness_mins: Mapped[int] = mapped_column(Integer, default=0)
    undertime_mins: Mapped[int] = mapped_column(Integer, default=0)
    remarks: Mapped[str] = mapped_column(String(255), default="")

    __table_args__ = (UniqueConstraint("employee_id", "attendance_date", name="uq_dtr_employee_date"),)


# --------------------------------------------------------------------------
# Statutory tables (global, effectivity-dated)
# --------------------------------------------------------------------------


class SssContributionTable(Base):
    __tablename__ = "sss_contribution_tables"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String(40), nullable=False)
    range_start: Mapped[Decimal] = mapped_column(Money, nullable=False)
    range_end: Mapped[Decimal] = mapped_column(Money, nullable=False)
    monthly_salary_credit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    employee_share: Mapped[Decimal] = mapped_column(Money, nullable=False)
    employer_share: Mapped[Decimal] = mapped_column(Money, nullable=False)
    ec_contribution: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_contribution: Mapped[Decimal] = mapped_column(Money, nullable=False)
    wisp_employee: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    wisp_employer: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class PhilHealthContributionTable(Base):
    __tablename__ = "philhealth_contribution_tables"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String(40), nullable=False)
    premium_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    monthly_floor: Mapped[Decimal] = mapped_column(Money, nullable=False)
    monthly_ceiling: Mapped[Decimal] = mapped_column(Money, nullable=False)
    employee_share_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    employer_share_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    membership_category: Mapped[str | None] = mapped_column(String(60), nullable=True)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class PagIbigContributionTable(Base):
    __tablename__ = "pagibig_contribution_tables"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String(40), nullable=False)
    salary_bracket_min: Mapped[Decimal] = mapped_column(Money, nullable=False)
    salary_bracket_max: Mapped[Decimal] = mapped_column(Money, nullable=False)
    employee_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    employer_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    max_monthly_comp: Mapped[Decimal] = mapped_column(Money, nullable=False)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class TaxTable(Base):
    __tablename__ = "tax_tables"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String(40), nullable=False)
    table_type: Mapped[str] = mapped_column(String(20), nullable=False)  # SEMI_MONTHLY | MONTHLY | ANNUAL
    bracket_over: Mapped[Decimal] = mapped_column(Money, nullable=False)
    bracket_not_over: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    base_tax: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    excess_over: Mapped[Decimal] = mapped_column(Money, nullable=False)
    effective_year: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    __table_args__ = (Index("ix_tax_table_type_year", "table_type", "effective_year"),)


# --------------------------------------------------------------------------
# Recurring items and loans
# --------------------------------------------------------------------------


class RecurringEarning(Base):
    __tablename__ = "recurring_earnings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), default="PER_PAYROLL")  # PER_PAYROLL | MONTHLY
    proration: Mapped[str] = mapped_column(String(20), default="NONE")  # NONE | PRORATED_DAYS | PRORATED_HOURS
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


class RecurringDeduction(Base):
    __tablename__ = "recurring_deductions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(30), default="RECURRING")
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    is_percentage: Mapped[bool] = mapped_column(Boolean, default=False)
    percentage_rate: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    percentage_base: Mapped[str] = mapped_column(String(10), default="BASIC")  # BASIC | GROSS | NET
    frequency: Mapped[str] = mapped_column(String(20), default="PER_PAYROLL")
    applicability: Mapped[str] = mapped_column(String(20), default="ALL")  # ALL | FIRST_HALF | SECOND_HALF
    max_deduction: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    is_pre_tax: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[dt.date | None] = mapped_column(Date, nullable=True)


class Loan(Base):
    __tablename__ = "loans"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    loan_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    loan_type: Mapped[str] = mapped_column(String(30), default="COMPANY")  # COMPANY | SSS | PAGIBIG
    principal_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")  # ACTIVE | FULLY_PAID
    priority: Mapped[int] = mapped_column(Integer, default=100)

    amortizations: Mapped[list["LoanAmortization"]] = relationship(
        back_populates="loan", cascade="all, delete-orphan", order_by="LoanAmortization.sequence"
    )


class LoanAmortization(Base):
    __tablename__ = "loan_amortizations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    payslip_id: Mapped[int | None] = mapped_column(ForeignKey("payslips.id", ondelete="SET NULL"), nullable=True)

    loan: Mapped[Loan] = relationship(back_populates="amortizations")


class LoanPayment(Base):
    __tablename__ = "loan_payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    amortization_id: Mapped[int | None] = mapped_column(ForeignKey("loan_amortizations.id"), nullable=True)
    payroll_run_id: Mapped[int | None] = mapped_column(ForeignKey("payroll_runs.id", ondelete="SET NULL"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# --------------------------------------------------------------------------
# Payroll runs
# --------------------------------------------------------------------------


class PayrollRun(Base):
    __tablename__ = "payroll_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    pay_period_id: Mapped[int] = mapped_column(ForeignKey("pay_periods.id"), nullable=False, index=True)
    run_number: Mapped[str] = mapped_column(String(40), nullable=False)
    run_type: Mapped[str] = mapped_column(String(30), default="REGULAR")
    status: Mapped[str] = mapped_column(String(20), default="DRAFT", index=True)
    current_step: Mapped[int] = mapped_column(Integer, default=1)
    total_employees: Mapped[int] = mapped_column(Integer, default=0)
    total_gross_pay: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_net_pay: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_employer_contributions: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_employer_cost: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    filters_json: Mapped[str] = mapped_column(Text, default="{}")
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    computed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    generated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    paid_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    pay_period: Mapped[PayPeriod] = relationship()
    steps: Mapped[list["PayrollProcessStep"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="PayrollProcessStep.step_number"
    )
    payslips: Mapped[list["Payslip"]] = relationship(back_populates="run", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("company_id", "run_number", name="uq_payroll_run_number"),
        Index("ix_payroll_run_company_created", "company_id", "created_at"),
    )

    def step(self, number: int) -> "PayrollProcessStep":
        for s in self.steps:
            if s.step_number == number:
                return s
        raise KeyError(number)


class PayrollProcessStep(Base):
    __tablename__ = "payroll_process_steps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payroll_run_id: Mapped[int] = mapped_column(ForeignKey("payroll_runs.id"), nullable=False, index=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes_json: Mapped[str] = mapped_column(Text, default="{}")
    validation_errors_json: Mapped[str] = mapped_column(Text, default="[]")
    validation_warnings_json: Mapped[str] = mapped_column(Text, default="[]")

    run: Mapped[PayrollRun] = relationship(back_populates="steps")

    __table_args__ = (UniqueConstraint("payroll_run_id", "step_number", name="uq_run_step_number"),)


class Payslip(Base):
    __tablename__ = "payslips"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payroll_run_id: Mapped[int] = mapped_column(ForeignKey("payroll_runs.id"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    payslip_number: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    base_salary: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    daily_rate: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    hourly_rate: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    days_worked: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    days_absent: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    overtime_hours: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    night_diff_hours: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    basic_pay: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    gross_pay: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_earnings: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    net_pay: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    taxable_income: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    sss_employee: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    sss_employer: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    philhealth_employee: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    philhealth_employer: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    pagibig_employee: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    pagibig_employer: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    withholding_tax: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    ytd_gross: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    ytd_taxable: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    ytd_tax_withheld: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    run: Mapped[PayrollRun] = relationship(back_populates="payslips")
    employee: Mapped[Employee] = relationship()
    earnings: Mapped[list["PayslipEarning"]] = relationship(
        back_populates="payslip", cascade="all, delete-orphan", order_by="PayslipEarning.id"
    )
    deductions: Mapped[list["PayslipDeduction"]] = relationship(
        back_populates="payslip", cascade="all, delete-orphan", order_by="PayslipDeduction.id"
    )

    __table_args__ = (UniqueConstraint("payroll_run_id", "employee_id", name="uq_payslip_run_employee"),)

    @property
    def employer_contributions(self) -> Decimal:
        return (self.sss_employer or ZERO) + (self.philhealth_employer or ZERO) + (self.pagibig_employer or ZERO)


class PayslipEarning(Base):
    __tablename__ = "payslip_earnings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payslip_id: Mapped[int] = mapped_column(ForeignKey("payslips.id", ondelete="CASCADE"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    hours: Mapped[Decimal | None] = mapped_column(Quantity, nullable=True)
    multiplier: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)

    payslip: Mapped[Payslip] = relationship(back_populates="earnings")


class PayslipDeduction(Base):
    __tablename__ = "payslip_deductions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payslip_id: Mapped[int] = mapped_column(ForeignKey("payslips.id", ondelete="CASCADE"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    # ATTENDANCE | GOVERNMENT | TAX | RECURRING | ADJUSTMENT | LOAN
    reference_type: Mapped[str] = mapped_column(String(20), default="")
    reference_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_pre_tax: Mapped[bool] = mapped_column(Boolean, default=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)

    payslip: Mapped[Payslip] = relationship(back_populates="deductions")


# --------------------------------------------------------------------------
# Leave and overtime
# --------------------------------------------------------------------------


class LeaveType(Base):
    __tablename__ = "leave_types"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id"), nullable=True, index=True)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    leave_type_id: Mapped[int] = mapped_column(ForeignKey("leave_types.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    opening_balance: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    credits_earned: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    used: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    pending: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    current_balance: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    available_balance: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)

    __table_args__ = (UniqueConstraint("employee_id", "leave_type_id", "year", name="uq_leave_balance_year"),)


class LeaveBalanceTransaction(Base):
    __tablename__ = "leave_balance_transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    leave_balance_id: Mapped[int] = mapped_column(ForeignKey("leave_balances.id"), nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)  # RESERVATION | RELEASE | USAGE | CREDIT
    amount: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    available_before: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    available_after: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(30), default="")
    reference_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remarks: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    leave_type_id: Mapped[int] = mapped_column(ForeignKey("leave_types.id"), nullable=False)
    # Balance actually charged; Emergency Leave draws from Vacation Leave.
    charged_leave_type_id: Mapped[int | None] = mapped_column(ForeignKey("leave_types.id"), nullable=True)
    request_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_half_day: Mapped[bool] = mapped_column(Boolean, default=False)
    half_day_period: Mapped[str | None] = mapped_column(String(2), nullable=True)  # AM | PM
    number_of_days: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default="PENDING", index=True)
    submitted_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    supervisor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    supervisor_acted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    supervisor_remarks: Mapped[str] = mapped_column(String(255), default="")
    hr_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hr_acted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    hr_remarks: Mapped[str] = mapped_column(String(255), default="")
    approved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    employee: Mapped[Employee] = relationship()
    leave_type: Mapped[LeaveType] = relationship(foreign_keys=[leave_type_id])


class OvertimeRequest(Base):
    __tablename__ = "overtime_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    request_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    overtime_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default="PENDING", index=True)
    submitted_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    supervisor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    supervisor_acted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    supervisor_remarks: Mapped[str] = mapped_column(String(255), default="")
    hr_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hr_acted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    hr_remarks: Mapped[str] = mapped_column(String(255), default="")
    approved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    employee: Mapped[Employee] = relationship()


# --------------------------------------------------------------------------
# Material requests
# --------------------------------------------------------------------------


class DepartmentApprovalFlow(Base):
    __tablename__ = "department_approval_flows"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id"), nullable=False)
    required_steps: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    steps: Mapped[list["DepartmentApprovalFlowStep"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan", order_by="DepartmentApprovalFlowStep.step_number"
    )


class DepartmentApprovalFlowStep(Base):
    __tablename__ = "department_approval_flow_steps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    flow_id: Mapped[int] = mapped_column(ForeignKey("department_approval_flows.id"), nullable=False, index=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(80), default="")
    approver_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    flow: Mapped[DepartmentApprovalFlow] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("flow_id", "step_number", "approver_user_id", name="uq_flow_step_approver"),
    )


class MaterialRequest(Base):
    __tablename__ = "material_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    request_number: Mapped[str] = mapped_column(String(40), nullable=False)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id"), nullable=False)
    requester_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    date_needed: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    purpose: Mapped[str] = mapped_column(Text, default="")
    remarks: Mapped[str] = mapped_column(Text, default="")
    # DRAFT | PENDING_APPROVAL | APPROVED | REJECTED | CANCELLED
    status: Mapped[str] = mapped_column(String(30), default="DRAFT", index=True)
    required_steps: Mapped[int] = mapped_column(Integer, default=1)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    submitted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    # PENDING_PURCHASER | IN_PROGRESS | COMPLETED
    processing_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    processing_started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    processing_completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    processed_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processing_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    # PENDING_POSTING | POSTED
    posting_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    posting_reference: Mapped[str | None] = mapped_column(String(80), nullable=True)
    posting_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    posted_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    items: Mapped[list["MaterialRequestItem"]] = relationship(
        back_populates="request", cascade="all, delete-orphan", order_by="MaterialRequestItem.line_number"
    )
    approval_steps: Mapped[list["MaterialRequestApprovalStep"]] = relationship(
        back_populates="request", cascade="all, delete-orphan", order_by="MaterialRequestApprovalStep.step_number"
    )
    serve_batches: Mapped[list["MaterialRequestServeBatch"]] = relationship(
        back_populates="request", cascade="all, delete-orphan", order_by="MaterialRequestServeBatch.id"
    )

    __table_args__ = (
        UniqueConstraint("company_id", "request_number", name="uq_material_request_company_number"),
        Index("ix_material_request_company_created", "company_id", "created_at"),
    )


class MaterialRequestItem(Base):
    __tablename__ = "material_request_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_request_id: Mapped[int] = mapped_column(ForeignKey("material_requests.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    item_code: Mapped[str | None] = mapped_column(String(60), nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    uom: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    served_quantity: Mapped[Decimal] = mapped_column(Quantity, default=ZERO)
    unit_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    remarks: Mapped[str | None] = mapped_column(String(255), nullable=True)

    request: Mapped[MaterialRequest] = relationship(back_populates="items")


class MaterialRequestApprovalStep(Base):
    __tablename__ = "material_request_approval_steps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_request_id: Mapped[int] = mapped_column(ForeignKey("material_requests.id"), nullable=False, index=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(80), default="")
    approver_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING | APPROVED | REJECTED | SKIPPED
    acted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    remarks: Mapped[str | None] = mapped_column(String(255), nullable=True)

    request: Mapped[MaterialRequest] = relationship(back_populates="approval_steps")


class MaterialRequestServeBatch(Base):
    __tablename__ = "material_request_serve_batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_request_id: Mapped[int] = mapped_column(ForeignKey("material_requests.id"), nullable=False, index=True)
    po_number: Mapped[str] = mapped_column(String(80), nullable=False)
    supplier_name: Mapped[str] = mapped_column(String(200), nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_final_serve: Mapped[bool] = mapped_column(Boolean, default=False)
    served_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    served_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    request: Mapped[MaterialRequest] = relationship(back_populates="serve_batches")
    items: Mapped[list["MaterialRequestServeBatchItem"]] = relationship(
        back_populates="batch", cascade="all, delete-orphan"
    )


class MaterialRequestServeBatchItem(Base):
    __tablename__ = "material_request_serve_batch_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    serve_batch_id: Mapped[int] = mapped_column(
        ForeignKey("material_request_serve_batches.id"), nullable=False, index=True
    )
    material_request_item_id: Mapped[int] = mapped_column(ForeignKey("material_request_items.id"), nullable=False)
    quantity_served: Mapped[Decimal] = mapped_column(Quantity, nullable=False)

    batch: Mapped[MaterialRequestServeBatch] = relationship(back_populates="items")


class MaterialRequestPosting(Base):
    __tablename__ = "material_request_postings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_request_id: Mapped[int] = mapped_column(ForeignKey("material_requests.id"), nullable=False, index=True)
    posting_reference: Mapped[str | None] = mapped_column(String(80), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    posted_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# --------------------------------------------------------------------------
# Platform
# --------------------------------------------------------------------------


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(255), nullable=False)
    body_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, default=200)
    response_json: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("company_id", "key", "method", "path", name="uq_idem_company_key_method_path"),
        Index("ix_idem_created_at", "created_at"),
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    actor: Mapped[str] = mapped_column(String(120))  # e.g. "admin" or "user:12"
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(80))  # e.g. "CREATE_PAYROLL_RUN"
    resource: Mapped[str] = mapped_column(String(255), default="")
    ip: Mapped[str] = mapped_column(String(64), default="")
    ua: Mapped[str] = mapped_column(String(255), default="")
    result: Mapped[str] = mapped_column(String(40), default="ok")  # ok/fail/denied
    meta_json: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (Index("ix_audit_company_ts", "company_id", "ts"),)


class PolicySetting(Base):
    __tablename__ = "policy_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    policy_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("company_id", "year", name="uq_policy_company_year"),
        Index("ix_policy_company_year", "company_id", "year"),
    )


class PolicySettingHistory(Base):
    __tablename__ = "policy_settings_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    actor: Mapped[str] = mapped_column(String(120))
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    old_json: Mapped[str] = mapped_column(Text, default="{}")
    new_json: Mapped[str] = mapped_column(Text, default="{}")

    __table_args__ = (Index("ix_policy_hist_company_year_ts", "company_id", "year", "ts"),)
