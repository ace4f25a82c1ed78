from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class HealthResponse(BaseModel):
    ok: bool
    status: Optional[str] = None
    error: Optional[str] = None


class SimpleOkResponse(BaseModel):
    ok: bool = True


class MessageResponse(BaseModel):
    ok: bool = True
    message: str


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    code: Optional[str] = None
    request_id: Optional[str] = None


class MetaResponse(BaseModel):
    ok: bool = True
    version: str
    git_sha: Optional[str] = None
    build_ts: Optional[str] = None


# --------------------------------------------------------------------------
# Auth and administration
# --------------------------------------------------------------------------


class LoginRequest(BaseModel):
    company_slug: str = Field(min_length=3, max_length=80)
    username: str = Field(min_length=1, max_length=80)
    password: str = Field(min_length=1, max_length=200)


class TokenResponse(BaseModel):
    ok: bool = True
    token: str
    ttl: int


class CompanyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=3, max_length=80)
    tin: str = Field(default="", max_length=20)


class CompanySummary(BaseModel):
    id: int
    name: str
    slug: str
    created_at: Optional[str] = None


class CompanyCreateResponse(BaseModel):
    ok: bool = True
    company: CompanySummary


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=80)
    password: str = Field(min_length=8, max_length=200)
    role: str = "EMPLOYEE"
    full_name: str = Field(default="", max_length=200)
    employee_id: Optional[int] = None
    is_request_approver: bool = False
    is_material_request_purchaser: bool = False
    is_material_request_poster: bool = False


class DepartmentCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=30)
    name: str = Field(min_length=1, max_length=120)


# --------------------------------------------------------------------------
# Payroll
# --------------------------------------------------------------------------


class PayPeriodCreateRequest(BaseModel):
    pay_frequency: Literal["SEMI_MONTHLY", "MONTHLY", "BI_WEEKLY", "WEEKLY"] = "SEMI_MONTHLY"
    year: int = Field(ge=2000, le=2100)
    period_number: int = Field(ge=1, le=52)
    period_half: Optional[Literal["FIRST", "SECOND"]] = None
    cutoff_start: dt.date
    cutoff_end: dt.date
    pay_date: dt.date
    working_days: Optional[int] = Field(default=None, ge=0, le=31)


class PayrollRunCreateRequest(BaseModel):
    pay_period_id: int
    run_type: Literal["REGULAR", "THIRTEENTH_MONTH", "MID_YEAR_BONUS"] = "REGULAR"
    department_ids: list[int] = Field(default_factory=list)
    employee_ids: list[int] = Field(default_factory=list)


class AdjustmentRequest(BaseModel):
    kind: Literal["EARNING", "DEDUCTION"]
    description: str = Field(min_length=1, max_length=120)
    amount: Decimal = Field(gt=0)
    is_taxable: bool = True


class PayrollRunListResponse(BaseModel):
    ok: bool = True
    items: list[dict[str, Any]]
    next_cursor: Optional[str] = None
    has_more: bool = False


# --------------------------------------------------------------------------
# Statutory tables
# --------------------------------------------------------------------------


class SssRow(BaseModel):
    range_start: Decimal = Field(ge=0)
    range_end: Decimal = Field(ge=0)
    monthly_salary_credit: Decimal = Field(ge=0)
    employee_share: Decimal = Field(ge=0)
    employer_share: Decimal = Field(ge=0)
    ec_contribution: Decimal = Field(default=Decimal("0"), ge=0)
    total_contribution: Decimal = Field(ge=0)
    wisp_employee: Decimal = Field(default=Decimal("0"), ge=0)
    wisp_employer: Decimal = Field(default=Decimal("0"), ge=0)


class PhilHealthRow(BaseModel):
    premium_rate: Decimal = Field(ge=0, le=1)
    monthly_floor: Decimal = Field(ge=0)
    monthly_ceiling: Decimal = Field(ge=0)
    employee_share_rate: Decimal = Field(ge=0, le=1)
    employer_share_rate: Decimal = Field(ge=0, le=1)
    membership_category: Optional[str] = Field(default=None, max_length=60)


class PagIbigRow(BaseModel):
    salary_bracket_min: Decimal = Field(ge=0)
    salary_bracket_max: Decimal = Field(ge=0)
    employee_rate: Decimal = Field(ge=0, le=1)
    employer_rate: Decimal = Field(ge=0, le=1)
    max_monthly_comp: Decimal = Field(ge=0)


class TaxRow(BaseModel):
    bracket_over: Decimal = Field(ge=0)
    bracket_not_over: Optional[Decimal] = Field(default=None, ge=0)
    base_tax: Decimal = Field(ge=0)
    tax_rate: Decimal = Field(ge=0, le=1)
    excess_over: Decimal = Field(ge=0)


class StatutoryTablesRequest(BaseModel):
    effective_from: dt.date
    table_type: Literal["SEMI_MONTHLY", "MONTHLY", "ANNUAL"] = "SEMI_MONTHLY"
    sss_rows: list[SssRow] = Field(min_length=1)
    philhealth_rows: list[PhilHealthRow] = Field(min_length=1)
    pagibig_rows: list[PagIbigRow] = Field(min_length=1)
    tax_rows: list[TaxRow] = Field(min_length=1)


class StatutorySeedRequest(BaseModel):
    effective_from: dt.date


class StatutoryPreviewRequest(BaseModel):
    monthly_base: Decimal = Field(ge=0)
    taxable: Optional[Decimal] = Field(default=None, ge=0)
    table_type: Literal["SEMI_MONTHLY", "MONTHLY", "ANNUAL"] = "SEMI_MONTHLY"
    on_date: Optional[dt.date] = None


# --------------------------------------------------------------------------
# Material requests
# --------------------------------------------------------------------------


class MaterialRequestItemIn(BaseModel):
    item_code: Optional[str] = Field(default=None, max_length=60)
    description: str = Field(min_length=1, max_length=500)
    uom: str = Field(min_length=1, max_length=40)
    quantity: Decimal = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    remarks: Optional[str] = Field(default=None, max_length=255)


class MaterialRequestDraftRequest(BaseModel):
    department_id: int
    date_needed: Optional[dt.date] = None
    purpose: str = Field(default="", max_length=2000)
    remarks: str = Field(default="", max_length=2000)
    items: list[MaterialRequestItemIn] = Field(min_length=1, max_length=200)


class ApproverSelection(BaseModel):
    step_number: int = Field(ge=1, le=4)
    approver_user_id: int


class MaterialRequestSubmitRequest(BaseModel):
    approver_selections: list[ApproverSelection] = Field(default_factory=list, max_length=4)

    @field_validator("approver_selections")
    @classmethod
    def _unique_steps(cls, value: list[ApproverSelection]) -> list[ApproverSelection]:
        steps = [s.step_number for s in value]
        if len(steps) != len(set(steps)):
            raise ValueError("Each approval step can only be selected once.")
        return value

    def as_mapping(self) -> dict[int, int]:
        return {s.step_number: s.approver_user_id for s in self.approver_selections}


class RemarksRequest(BaseModel):
    remarks: Optional[str] = Field(default=None, max_length=1000)


class ApprovalStepIn(BaseModel):
    step_number: int = Field(ge=1, le=4)
    step_name: str = Field(default="", max_length=80)
    approver_user_ids: list[int] = Field(min_length=1)


class ApprovalFlowRequest(BaseModel):
    department_id: int
    required_steps: int = Field(ge=1, le=4)
    steps: list[ApprovalStepIn] = Field(min_length=1)


class ServedItemIn(BaseModel):
    item_id: int
    quantity: Decimal = Field(gt=0)


class ProcessingStatusRequest(BaseModel):
    status: Literal["IN_PROGRESS", "COMPLETED"]
    remarks: Optional[str] = Field(default=None, max_length=1000)
    po_number: Optional[str] = Field(default=None, max_length=80)
    supplier_name: Optional[str] = Field(default=None, max_length=160)
    items: list[ServedItemIn] = Field(default_factory=list, max_length=200)

    @model_validator(mode="after")
    def _check_serve(self) -> "ProcessingStatusRequest":
        ids = [i.item_id for i in self.items]
        if len(ids) != len(set(ids)):
            raise ValueError("Each request item can only appear once per serve action.")
        if self.status == "IN_PROGRESS":
            if not (self.po_number or "").strip():
                raise ValueError("PO # is required when marking request as served.")
            if not (self.supplier_name or "").strip():
                raise ValueError("Supplier is required when marking request as served.")
            if not self.items:
                raise ValueError("At least one line item quantity is required when marking request as served.")
        return self


class PostingRequest(BaseModel):
    posting_reference: Optional[str] = Field(default=None, max_length=80)
    remarks: Optional[str] = Field(default=None, max_length=1000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


# --------------------------------------------------------------------------
# Leave and overtime
# --------------------------------------------------------------------------


class DecisionRequest(BaseModel):
    decision: Literal["APPROVE", "REJECT"]
    remarks: str = Field(default="", max_length=255)


class LeaveRequestCreate(BaseModel):
    leave_type_id: int
    start_date: dt.date
    end_date: dt.date
    is_half_day: bool = False
    half_day_period: Optional[Literal["AM", "PM"]] = None
    reason: str = Field(default="", max_length=2000)


class LeaveCreditRequest(BaseModel):
    employee_id: int
    leave_type_id: int
    year: int = Field(ge=2000, le=2100)
    amount: Decimal = Field(gt=0)
    remarks: str = Field(default="", max_length=255)


class LeaveInitializeRequest(BaseModel):
    year: int = Field(ge=2000, le=2100)
    credits: dict[str, Decimal] = Field(default_factory=dict)


class OvertimeRequestCreate(BaseModel):
    overtime_date: dt.date
    start_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    end_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    reason: str = Field(default="", max_length=2000)


# --------------------------------------------------------------------------
# Master data
# --------------------------------------------------------------------------


class SalaryIn(BaseModel):
    base_salary: Decimal = Field(gt=0)
    salary_rate_type: Literal["MONTHLY", "DAILY"] = "MONTHLY"
    daily_rate: Optional[Decimal] = Field(default=None, gt=0)
    hourly_rate: Optional[Decimal] = Field(default=None, gt=0)
    monthly_divisor: int = Field(default=365, ge=1, le=366)
    hours_per_day: Decimal = Field(default=Decimal("8"), gt=0, le=24)
    effective_date: Optional[dt.date] = None


class EmployeeCreateRequest(BaseModel):
    employee_number: str = Field(min_length=1, max_length=40)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    hire_date: dt.date
    salary: SalaryIn
    department_id: Optional[int] = None
    supervisor_user_id: Optional[int] = None
    pay_frequency: Literal["SEMI_MONTHLY", "MONTHLY", "BI_WEEKLY", "WEEKLY"] = "SEMI_MONTHLY"
    rest_days: list[str] = Field(default_factory=lambda: ["SATURDAY", "SUNDAY"], max_length=7)
    is_overtime_eligible: bool = True
    is_night_diff_eligible: bool = True
    is_substituted_filing: bool = False
    has_thirteenth_month: bool = True


class TimeRecordIn(BaseModel):
    attendance_date: dt.date
    attendance_status: Literal["PRESENT", "ABSENT", "ON_LEAVE", "REST_DAY", "HOLIDAY"] = "PRESENT"
    approval_status: Literal["APPROVED", "PENDING"] = "APPROVED"
    time_in: Optional[dt.datetime] = None
    time_out: Optional[dt.datetime] = None
    hours_worked: Decimal = Field(default=Decimal("0"), ge=0, le=24)
    overtime_hours: Decimal = Field(default=Decimal("0"), ge=0, le=24)
    night_diff_hours: Decimal = Field(default=Decimal("0"), ge=0, le=24)
    tardiness_mins: int = Field(default=0, ge=0, le=1440)
    undertime_mins: int = Field(default=0, ge=0, le=1440)
    remarks: str = Field(default="", max_length=255)


class TimeRecordsRequest(BaseModel):
    records: list[TimeRecordIn] = Field(min_length=1, max_length=62)


class HolidayCreateRequest(BaseModel):
    holiday_date: dt.date
    name: str = Field(min_length=1, max_length=120)
    holiday_type: Literal["REGULAR", "SPECIAL_NON_WORKING", "SPECIAL_WORKING"] = "REGULAR"
    pay_multiplier: Optional[Decimal] = Field(default=None, ge=1, le=10)


class AmortizationIn(BaseModel):
    due_date: dt.date
    amount: Decimal = Field(gt=0)


class LoanCreateRequest(BaseModel):
    employee_id: int
    loan_number: str = Field(min_length=1, max_length=40)
    loan_type: Literal["COMPANY", "SSS", "PAGIBIG"] = "COMPANY"
    principal_amount: Decimal = Field(gt=0)
    priority: int = Field(default=100, ge=0, le=1000)
    installments: Optional[int] = Field(default=None, ge=1, le=240)
    first_due_date: Optional[dt.date] = None
    months_between: int = Field(default=1, ge=1, le=12)
    schedule: list[AmortizationIn] = Field(default_factory=list, max_length=240)

    @model_validator(mode="after")
    def _check_schedule(self) -> "LoanCreateRequest":
        if not self.schedule and not (self.installments and self.first_due_date):
            raise ValueError("Provide an amortization schedule or installments with a first due date.")
        return self


class RecurringEarningCreateRequest(BaseModel):
    description: str = Field(min_length=1, max_length=120)
    amount: Decimal = Field(gt=0)
    effective_from: dt.date
    effective_to: Optional[dt.date] = None
    frequency: Literal["PER_PAYROLL", "MONTHLY"] = "PER_PAYROLL"
    proration: Literal["NONE", "PRORATED_DAYS", "PRORATED_HOURS"] = "NONE"
    is_taxable: bool = True


class RecurringDeductionCreateRequest(BaseModel):
    description: str = Field(min_length=1, max_length=120)
    effective_from: dt.date
    code: str = Field(default="RECURRING", min_length=1, max_length=30)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    is_percentage: bool = False
    percentage_rate: Optional[Decimal] = Field(default=None, gt=0, le=1)
    percentage_base: Literal["BASIC", "GROSS", "NET"] = "BASIC"
    frequency: Literal["PER_PAYROLL", "MONTHLY"] = "PER_PAYROLL"
    applicability: Literal["ALL", "FIRST_HALF", "SECOND_HALF"] = "ALL"
    max_deduction: Optional[Decimal] = Field(default=None, gt=0)
    is_pre_tax: bool = False
    effective_to: Optional[dt.date] = None
