"""leave balances, leave and overtime requests

Revision ID: 0002_leave_overtime
Revises: 0001_initial
Create Date: 2026-09-21 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_leave_overtime'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def _approval_columns():
    return [
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('supervisor_user_id', sa.Integer(), nullable=True),
        sa.Column('supervisor_acted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('supervisor_remarks', sa.String(length=255), nullable=True),
        sa.Column('hr_user_id', sa.Integer(), nullable=True),
        sa.Column('hr_acted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('hr_remarks', sa.String(length=255), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        'leave_types',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('code', sa.String(length=30), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
    )
    op.create_index('ix_leave_types_company_id', 'leave_types', ['company_id'])

    op.create_table(
        'leave_balances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('leave_type_id', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('opening_balance', sa.Numeric(14, 4), nullable=True),
        sa.Column('credits_earned', sa.Numeric(14, 4), nullable=True),
        sa.Column('used', sa.Numeric(14, 4), nullable=True),
        sa.Column('pending', sa.Numeric(14, 4), nullable=True),
        sa.Column('current_balance', sa.Numeric(14, 4), nullable=True),
        sa.Column('available_balance', sa.Numeric(14, 4), nullable=True),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.ForeignKeyConstraint(['leave_type_id'], ['leave_types.id']),
        sa.UniqueConstraint('employee_id', 'leave_type_id', 'year', name='uq_leave_balance_year'),
    )
    op.create_index('ix_leave_balances_employee_id', 'leave_balances', ['employee_id'])

    op.create_table(
        'leave_balance_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('leave_balance_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Numeric(14, 4), nullable=False),
        sa.Column('available_before', sa.Numeric(14, 4), nullable=False),
        sa.Column('available_after', sa.Numeric(14, 4), nullable=False),
        sa.Column('reference_type', sa.String(length=30), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['leave_balance_id'], ['leave_balances.id']),
    )
    op.create_index('ix_leave_balance_transactions_leave_balance_id', 'leave_balance_transactions', ['leave_balance_id'])

    op.create_table(
        'leave_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('leave_type_id', sa.Integer(), nullable=False),
        sa.Column('charged_leave_type_id', sa.Integer(), nullable=True),
        sa.Column('request_number', sa.String(length=40), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('is_half_day', sa.Boolean(), nullable=True),
        sa.Column('half_day_period', sa.String(length=2), nullable=True),
        sa.Column('number_of_days', sa.Numeric(14, 4), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        *_approval_columns(),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.ForeignKeyConstraint(['leave_type_id'], ['leave_types.id']),
        sa.ForeignKeyConstraint(['charged_leave_type_id'], ['leave_types.id']),
        sa.UniqueConstraint('request_number'),
    )
    op.create_index('ix_leave_requests_company_id', 'leave_requests', ['company_id'])
    op.create_index('ix_leave_requests_employee_id', 'leave_requests', ['employee_id'])
    op.create_index('ix_leave_requests_status', 'leave_requests', ['status'])

    op.create_table(
        'overtime_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('request_number', sa.String(length=40), nullable=False),
        sa.Column('overtime_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('hours', sa.Numeric(6, 2), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        *_approval_columns(),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['employee_id'], ['employees.id']),
        sa.UniqueConstraint('request_number'),
    )
    op.create_index('ix_overtime_requests_company_id', 'overtime_requests', ['company_id'])
    op.create_index('ix_overtime_requests_employee_id', 'overtime_requests', ['employee_id'])
    op.create_index('ix_overtime_requests_overtime_date', 'overtime_requests', ['overtime_date'])
    op.create_index('ix_overtime_requests_status', 'overtime_requests', ['status'])


def downgrade() -> None:
    op.drop_table('overtime_requests')
    op.drop_table('leave_requests')
    op.drop_table('leave_balance_transactions')
    op.drop_table('leave_balances')
    op.drop_table('leave_types')
