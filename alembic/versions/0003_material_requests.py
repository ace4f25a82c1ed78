"""material requests: approval flows, serve batches, postings

Revision ID: 0003_material_requests
Revises: 0002_leave_overtime
Create Date: 2026-09-28 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_material_requests'
down_revision = '0002_leave_overtime'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'department_approval_flows',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('department_id', sa.Integer(), nullable=False),
        sa.Column('required_steps', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['department_id'], ['departments.id']),
    )
    op.create_index('ix_department_approval_flows_company_id', 'department_approval_flows', ['company_id'])

    op.create_table(
        'department_approval_flow_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('flow_id', sa.Integer(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('step_name', sa.String(length=80), nullable=True),
        sa.Column('approver_user_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['flow_id'], ['department_approval_flows.id']),
        sa.ForeignKeyConstraint(['approver_user_id'], ['users.id']),
        sa.UniqueConstraint('flow_id', 'step_number', 'approver_user_id', name='uq_flow_step_approver'),
    )
    op.create_index('ix_department_approval_flow_steps_flow_id', 'department_approval_flow_steps', ['flow_id'])

    op.create_table(
        'material_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('request_number', sa.String(length=40), nullable=False),
        sa.Column('department_id', sa.Integer(), nullable=False),
        sa.Column('requester_user_id', sa.Integer(), nullable=False),
        sa.Column('date_needed', sa.Date(), nullable=True),
        sa.Column('purpose', sa.Text(), nullable=True),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('required_steps', sa.Integer(), nullable=True),
        sa.Column('current_step', sa.Integer(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_status', sa.String(length=30), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('processing_remarks', sa.Text(), nullable=True),
        sa.Column('posting_status', sa.String(length=30), nullable=True),
        sa.Column('posting_reference', sa.String(length=80), nullable=True),
        sa.Column('posting_remarks', sa.Text(), nullable=True),
        sa.Column('posted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('posted_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['department_id'], ['departments.id']),
        sa.ForeignKeyConstraint(['requester_user_id'], ['users.id']),
        sa.UniqueConstraint('company_id', 'request_number', name='uq_material_request_company_number'),
    )
    op.create_index('ix_material_requests_company_id', 'material_requests', ['company_id'])
    op.create_index('ix_material_requests_status', 'material_requests', ['status'])
    op.create_index('ix_material_request_company_created', 'material_requests', ['company_id', 'created_at'])

    op.create_table(
        'material_request_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('material_request_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('item_code', sa.String(length=60), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('uom', sa.String(length=20), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 4), nullable=False),
        sa.Column('served_quantity', sa.Numeric(14, 4), nullable=True),
        sa.Column('unit_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['material_request_id'], ['material_requests.id']),
    )
    op.create_index('ix_material_request_items_material_request_id', 'material_request_items', ['material_request_id'])

    op.create_table(
        'material_request_approval_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('material_request_id', sa.Integer(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('step_name', sa.String(length=80), nullable=True),
        sa.Column('approver_user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('acted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['material_request_id'], ['material_requests.id']),
        sa.ForeignKeyConstraint(['approver_user_id'], ['users.id']),
    )
    op.create_index(
        'ix_material_request_approval_steps_material_request_id', 'material_request_approval_steps', ['material_request_id']
    )

    op.create_table(
        'material_request_serve_batches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('material_request_id', sa.Integer(), nullable=False),
        sa.Column('po_number', sa.String(length=80), nullable=False),
        sa.Column('supplier_name', sa.String(length=200), nullable=False),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('is_final_serve', sa.Boolean(), nullable=True),
        sa.Column('served_by_user_id', sa.Integer(), nullable=False),
        sa.Column('served_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['material_request_id'], ['material_requests.id']),
    )
    op.create_index(
        'ix_material_request_serve_batches_material_request_id', 'material_request_serve_batches', ['material_request_id']
    )

    op.create_table(
        'material_request_serve_batch_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('serve_batch_id', sa.Integer(), nullable=False),
        sa.Column('material_request_item_id', sa.Integer(), nullable=False),
        sa.Column('quantity_served', sa.Numeric(14, 4), nullable=False),
        sa.ForeignKeyConstraint(['serve_batch_id'], ['material_request_serve_batches.id']),
        sa.ForeignKeyConstraint(['material_request_item_id'], ['material_request_items.id']),
    )
    op.create_index(
        'ix_material_request_serve_batch_items_serve_batch_id', 'material_request_serve_batch_items', ['serve_batch_id']
    )

    op.create_table(
        'material_request_postings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('material_request_id', sa.Integer(), nullable=False),
        sa.Column('posting_reference', sa.String(length=80), nullable=True),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('posted_by_user_id', sa.Integer(), nullable=False),
        sa.Column('posted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['material_request_id'], ['material_requests.id']),
    )
    op.create_index('ix_material_request_postings_material_request_id', 'material_request_postings', ['material_request_id'])


def downgrade() -> None:
    op.drop_table('material_request_postings')
    op.drop_table('material_request_serve_batch_items')
    op.drop_table('material_request_serve_batches')
    op.drop_table('material_request_approval_steps')
    op.drop_table('material_request_items')
    op.drop_table('material_requests')
    op.drop_table('department_approval_flow_steps')
    op.drop_table('department_approval_flows')
