"""initial schema: organization, calendar, statutory tables, payroll runs

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-14 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _money():
    return sa.Numeric(14, 2)


def _qty():
    return sa.Numeric(14, 4)


def _rate():
    return sa.Numeric(10, 6)


def upgrade() -> None:
    # companies / users / departments
    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('slug', sa.String(length=80), nullable=False),
        sa.Column('tin', sa.String(length=20), nullable=True),
        sa.Column('token_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_companies_slug', 'companies', ['slug'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=80), nullable=False),
        sa.Column('full_name', sa.String(length=200), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=30), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('is_request_approver', sa.Boolean(), nullable=True),
        sa.Column('is_material_request_purchaser', sa.Boolean(), nullable=True),
        sa.Column('is_material_request_poster', sa.Boolean(), nullable=True),
        sa.Column('employee_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.UniqueConstraint('company_id', 'username', name='uq_user_company_username'),
    )
    op.create_index('ix_users_company_id', 'users', ['company_id'])
    op.create_index('ix_users_employee_id', 'users', ['employee_id'])

    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=30), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.UniqueConstraint('company_id', 'code', name='uq_department_company_code'),
    )
    op.create_index('ix_departments_company_id', 'departments', ['company_id'])

    # employees
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('employee_number', sa.String(length=40), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('department_id', sa.Integer(), nullable=True),
        sa.Column('supervisor_user_id', sa.Integer(), nullable=True),
        sa.Column('hire_date', sa.Date(), nullable=False),
        sa.Column('separation_date', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('pay_frequency', sa.String(length=20), nullable=True),
        sa.Column('rest_days', sa.String(length=120), nullable=True),
        sa.Column('is_overtime_eligible', sa.Boolean(), nullable=True),
        sa.Column('is_night_diff_eligible', sa.Boolean(), nullable=True),
        sa.Column('is_substituted_filing', sa.Boolean(), nullable=True),
        sa.Column('has_thirteenth_month', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['department_id'], ['departments.id']),
        sa.ForeignKeyConstraint(['supervisor_user_id'], ['users.id']),
        sa.UniqueConstraint('company_id', 'employee_number', name='uq_employee_company_number'),
    )
    op.create_index('ix_employees_company_id', 'employees', ['company_id'])
    op.create_index('ix_employees_department_id', 'employees', ['department_id'])

    op.create_table(
        'employee_salaries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('base_salary', _money(), nullable=False),
        sa.Column('salary_rate_type', sa.String(length=20), nullable=True),
        sa.Column('daily_rate', _money(), nullable=True),
        sa.Column('hourly_rate', _money(), nullable=True),
        sa.Column('monthly_divisor', sa.Integer(), nullable=True),
        sa.Column('hours_per_day', sa.Numeric(5, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('effective_date', sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.UniqueConstraint('employee_id'),
    )

    # calendar and attendance
    op.create_table(
        'pay_periods',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('pay_frequency', sa.String(length=20), nullable=True),
        sa.Column('periods_per_year', sa.Integer(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('period_number', sa.Integer(), nullable=False),
        sa.Column('period_half', sa.String(length=10), nullable=True),
        sa.Column('cutoff_start', sa.Date(), nullable=False),
        sa.Column('cutoff_end', sa.Date(), nullable=False),
        sa.Column('pay_date', sa.Date(), nullable=False),
        sa.Column('working_days', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.UniqueConstraint('company_id', 'pay_frequency', 'year', 'period_number', name='uq_pay_period_number'),
    )
    op.create_index('ix_pay_periods_company_id', 'pay_periods', ['company_id'])
    op.create_index('ix_pay_period_cutoff', 'pay_periods', ['company_id', 'cutoff_start', 'cutoff_end'])

    op.create_table(
        'holidays',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('holiday_date', sa.Date(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('holiday_type', sa.String(length=30), nullable=True),
        sa.Column('pay_multiplier', sa.Numeric(6, 2), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
    )
    op.create_index('ix_holidays_company_id', 'holidays', ['company_id'])
    op.create_index('ix_holidays_holiday_date', 'holidays', ['holiday_date'])

    op.create_table(
        'daily_time_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('attendance_date', sa.Date(), nullable=False),
        sa.Column('attendance_status', sa.String(length=20), nullable=True),
        sa.Column('approval_status', sa.String(length=20), nullable=True),
        sa.Column('time_in', sa.DateTime(timezone=True), nullable=True),
        sa.Column('time_out', sa.DateTime(timezone=True), nullable=True),
        sa.Column('hours_worked', sa.Numeric(6, 2), nullable=True),
        sa.Column('overtime_hours', sa.Numeric(6, 2), nullable=True),
        sa.Column('night_diff_hours', sa.Numeric(6, 2), nullable=True),
        sa.Column('tardiness_mins', sa.Integer(), nullable=True),
        sa.Column('undertime_mins', sa.Integer(), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.UniqueConstraint('employee_id', 'attendance_date', name='uq_dtr_employee_date'),
    )
    op.create_index('ix_daily_time_records_employee_id', 'daily_time_records', ['employee_id'])

    # statutory tables (global, effectivity-dated)
    op.create_table(
        'sss_contribution_tables',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('version', sa.String(length=40), nullable=False),
        sa.Column('range_start', _money(), nullable=False),
        sa.Column('range_end', _money(), nullable=False),
        sa.Column('monthly_salary_credit', _money(), nullable=False),
        sa.Column('employee_share', _money(), nullable=False),
        sa.Column('employer_share', _money(), nullable=False),
        sa.Column('ec_contribution', _money(), nullable=True),
        sa.Column('total_contribution', _money(), nullable=False),
        sa.Column('wisp_employee', _money(), nullable=True),
        sa.Column('wisp_employer', _money(), nullable=True),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
    )
    op.create_index('ix_sss_contribution_tables_is_active', 'sss_contribution_tables', ['is_active'])

    op.create_table(
        'philhealth_contribution_tables',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('version', sa.String(length=40), nullable=False),
        sa.Column('premium_rate', _rate(), nullable=False),
        sa.Column('monthly_floor', _money(), nullable=False),
        sa.Column('monthly_ceiling', _money(), nullable=False),
        sa.Column('employee_share_rate', _rate(), nullable=False),
        sa.Column('employer_share_rate', _rate(), nullable=False),
        sa.Column('membership_category', sa.String(length=60), nullable=True),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
    )
    op.create_index('ix_philhealth_contribution_tables_is_active', 'philhealth_contribution_tables', ['is_active'])

    op.create_table(
        'pagibig_contribution_tables',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('version', sa.String(length=40), nullable=False),
        sa.Column('salary_bracket_min', _money(), nullable=False),
        sa.Column('salary_bracket_max', _money(), nullable=False),
        sa.Column('employee_rate', _rate(), nullable=False),
        sa.Column('employer_rate', _rate(), nullable=False),
        sa.Column('max_monthly_comp', _money(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
    )
    op.create_index('ix_pagibig_contribution_tables_is_active', 'pagibig_contribution_tables', ['is_active'])

    op.create_table(
        'tax_tables',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('version', sa.String(length=40), nullable=False),
        sa.Column('table_type', sa.String(length=20), nullable=False),
        sa.Column('bracket_over', _money(), nullable=False),
        sa.Column('bracket_not_over', _money(), nullable=True),
        sa.Column('base_tax', _money(), nullable=False),
        sa.Column('tax_rate', _rate(), nullable=False),
        sa.Column('excess_over', _money(), nullable=False),
        sa.Column('effective_year', sa.Integer(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
    )
    op.create_index('ix_tax_tables_is_active', 'tax_tables', ['is_active'])
    op.create_index('ix_tax_table_type_year', 'tax_tables', ['table_type', 'effective_year'])

    # recurring items
    op.create_table(
        'recurring_earnings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=120), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('frequency', sa.String(length=20), nullable=True),
        sa.Column('proration', sa.String(length=20), nullable=True),
        sa.Column('is_taxable', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
    )
    op.create_index('ix_recurring_earnings_employee_id', 'recurring_earnings', ['employee_id'])

    op.create_table(
        'recurring_deductions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=30), nullable=True),
        sa.Column('description', sa.String(length=120), nullable=False),
        sa.Column('amount', _money(), nullable=True),
        sa.Column('is_percentage', sa.Boolean(), nullable=True),
        sa.Column('percentage_rate', _rate(), nullable=True),
        sa.Column('percentage_base', sa.String(length=10), nullable=True),
        sa.Column('frequency', sa.String(length=20), nullable=True),
        sa.Column('applicability', sa.String(length=20), nullable=True),
        sa.Column('max_deduction', _money(), nullable=True),
        sa.Column('is_pre_tax', sa.Boolean(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
    )
    op.create_index('ix_recurring_deductions_employee_id', 'recurring_deductions', ['employee_id'])

    # payroll runs
    op.create_table(
        'payroll_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('pay_period_id', sa.Integer(), nullable=False),
        sa.Column('run_number', sa.String(length=40), nullable=False),
        sa.Column('run_type', sa.String(length=30), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('current_step', sa.Integer(), nullable=True),
        sa.Column('total_employees', sa.Integer(), nullable=True),
        sa.Column('total_gross_pay', _money(), nullable=True),
        sa.Column('total_deductions', _money(), nullable=True),
        sa.Column('total_net_pay', _money(), nullable=True),
        sa.Column('total_employer_contributions', _money(), nullable=True),
        sa.Column('total_employer_cost', _money(), nullable=True),
        sa.Column('filters_json', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_by', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['pay_period_id'], ['pay_periods.id']),
        sa.UniqueConstraint('company_id', 'run_number', name='uq_payroll_run_number'),
    )
    op.create_index('ix_payroll_runs_company_id', 'payroll_runs', ['company_id'])
    op.create_index('ix_payroll_runs_pay_period_id', 'payroll_runs', ['pay_period_id'])
    op.create_index('ix_payroll_runs_status', 'payroll_runs', ['status'])
    op.create_index('ix_payroll_run_company_created', 'payroll_runs', ['company_id', 'created_at'])

    op.create_table(
        'payroll_process_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payroll_run_id', sa.Integer(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('step_name', sa.String(length=40), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('is_completed', sa.Boolean(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by', sa.Integer(), nullable=True),
        sa.Column('notes_json', sa.Text(), nullable=True),
        sa.Column('validation_errors_json', sa.Text(), nullable=True),
        sa.Column('validation_warnings_json', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['payroll_run_id'], ['payroll_runs.id']),
        sa.UniqueConstraint('payroll_run_id', 'step_number', name='uq_run_step_number'),
    )
    op.create_index('ix_payroll_process_steps_payroll_run_id', 'payroll_process_steps', ['payroll_run_id'])

    amount_columns = [
        'base_salary', 'daily_rate', 'hourly_rate',
    ]
    quantity_columns = ['days_worked', 'days_absent', 'overtime_hours', 'night_diff_hours']
    total_columns = [
        'basic_pay', 'gross_pay', 'total_earnings', 'total_deductions', 'net_pay', 'taxable_income',
        'sss_employee', 'sss_employer', 'philhealth_employee', 'philhealth_employer',
        'pagibig_employee', 'pagibig_employer', 'withholding_tax',
        'ytd_gross', 'ytd_taxable', 'ytd_tax_withheld',
    ]
    op.create_table(
        'payslips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payroll_run_id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('payslip_number', sa.String(length=60), nullable=False),
        *[sa.Column(name, _money(), nullable=True) for name in amount_columns],
        *[sa.Column(name, _qty(), nullable=True) for name in quantity_columns],
        *[sa.Column(name, _money(), nullable=True) for name in total_columns],
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['payroll_run_id'], ['payroll_runs.id']),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.UniqueConstraint('payroll_run_id', 'employee_id', name='uq_payslip_run_employee'),
    )
    op.create_index('ix_payslips_payroll_run_id', 'payslips', ['payroll_run_id'])
    op.create_index('ix_payslips_employee_id', 'payslips', ['employee_id'])
    op.create_index('ix_payslips_payslip_number', 'payslips', ['payslip_number'])

    op.create_table(
        'payslip_earnings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payslip_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=30), nullable=False),
        sa.Column('description', sa.String(length=120), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('hours', _qty(), nullable=True),
        sa.Column('multiplier', sa.Numeric(6, 2), nullable=True),
        sa.Column('is_taxable', sa.Boolean(), nullable=True),
        sa.Column('is_manual', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['payslip_id'], ['payslips.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_payslip_earnings_payslip_id', 'payslip_earnings', ['payslip_id'])

    op.create_table(
        'payslip_deductions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payslip_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=30), nullable=False),
        sa.Column('description', sa.String(length=120), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('reference_type', sa.String(length=20), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('is_pre_tax', sa.Boolean(), nullable=True),
        sa.Column('is_manual', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['payslip_id'], ['payslips.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_payslip_deductions_payslip_id', 'payslip_deductions', ['payslip_id'])

    # loans (after payslips: amortizations and payments point back at the run)
    op.create_table(
        'loans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('loan_number', sa.String(length=40), nullable=False),
        sa.Column('loan_type', sa.String(length=30), nullable=True),
        sa.Column('principal_amount', _money(), nullable=False),
        sa.Column('balance', _money(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.UniqueConstraint('loan_number'),
    )
    op.create_index('ix_loans_employee_id', 'loans', ['employee_id'])

    op.create_table(
        'loan_amortizations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('loan_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payslip_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.id']),
        sa.ForeignKeyConstraint(['payslip_id'], ['payslips.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_loan_amortizations_loan_id', 'loan_amortizations', ['loan_id'])

    op.create_table(
        'loan_payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('loan_id', sa.Integer(), nullable=False),
        sa.Column('amortization_id', sa.Integer(), nullable=True),
        sa.Column('payroll_run_id', sa.Integer(), nullable=True),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('balance_after', _money(), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.id']),
        sa.ForeignKeyConstraint(['amortization_id'], ['loan_amortizations.id']),
        sa.ForeignKeyConstraint(['payroll_run_id'], ['payroll_runs.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_loan_payments_loan_id', 'loan_payments', ['loan_id'])

    # platform
    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('path', sa.String(length=255), nullable=False),
        sa.Column('body_hash', sa.String(length=64), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('company_id', 'key', 'method', 'path', name='uq_idem_company_key_method_path'),
    )
    op.create_index('ix_idem_created_at', 'idempotency_records', ['created_at'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actor', sa.String(length=120), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=80), nullable=True),
        sa.Column('resource', sa.String(length=255), nullable=True),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('ua', sa.String(length=255), nullable=True),
        sa.Column('result', sa.String(length=40), nullable=True),
        sa.Column('meta_json', sa.Text(), nullable=True),
    )
    op.create_index('ix_audit_events_ts', 'audit_events', ['ts'])
    op.create_index('ix_audit_events_company_id', 'audit_events', ['company_id'])
    op.create_index('ix_audit_company_ts', 'audit_events', ['company_id', 'ts'])

    op.create_table(
        'policy_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('policy_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('company_id', 'year', name='uq_policy_company_year'),
    )
    op.create_index('ix_policy_settings_company_id', 'policy_settings', ['company_id'])
    op.create_index('ix_policy_settings_year', 'policy_settings', ['year'])
    op.create_index('ix_policy_company_year', 'policy_settings', ['company_id', 'year'])

    op.create_table(
        'policy_settings_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actor', sa.String(length=120), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('old_json', sa.Text(), nullable=True),
        sa.Column('new_json', sa.Text(), nullable=True),
    )
    op.create_index('ix_policy_settings_history_ts', 'policy_settings_history', ['ts'])
    op.create_index('ix_policy_settings_history_company_id', 'policy_settings_history', ['company_id'])
    op.create_index('ix_policy_settings_history_year', 'policy_settings_history', ['year'])
    op.create_index('ix_policy_hist_company_year_ts', 'policy_settings_history', ['company_id', 'year', 'ts'])


def downgrade() -> None:
    for table in (
        'policy_settings_history',
        'policy_settings',
        'audit_events',
        'idempotency_records',
        'loan_payments',
        'loan_amortizations',
        'loans',
        'payslip_deductions',
        'payslip_earnings',
        'payslips',
        'payroll_process_steps',
        'payroll_runs',
        'recurring_deductions',
        'recurring_earnings',
        'tax_tables',
        'pagibig_contribution_tables',
        'philhealth_contribution_tables',
        'sss_contribution_tables',
        'daily_time_records',
        'holidays',
        'pay_periods',
        'employee_salaries',
        'employees',
        'departments',
        'users',
        'companies',
    ):
        op.drop_table(table)
