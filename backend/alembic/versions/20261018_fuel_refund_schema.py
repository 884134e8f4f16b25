"""Fuel refund schema: receipts, tax rates, quota and job tables

Revision ID: fuel_refund_schema
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'fuel_refund_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('receipts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('vehicle_id', sa.String(), nullable=True),
        sa.Column('uploaded_by', sa.String(), nullable=True),
        sa.Column('image_ref', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('station_name', sa.String(), nullable=False),
        sa.Column('seller_street', sa.String(), nullable=True),
        sa.Column('seller_city', sa.String(), nullable=True),
        sa.Column('seller_state', sa.String(length=2), nullable=True),
        sa.Column('seller_zip', sa.String(), nullable=True),
        sa.Column('gallons', sa.Numeric(10, 3), nullable=True),
        sa.Column('price_per_gallon', sa.Numeric(10, 3), nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('processing_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('fiscal_year', sa.String(length=9), nullable=False),
        sa.Column('upload_fiscal_year', sa.String(length=9), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_receipts_id'), 'receipts', ['id'], unique=False)
    op.create_index(op.f('ix_receipts_account_id'), 'receipts', ['account_id'], unique=False)
    op.create_index(op.f('ix_receipts_fiscal_year'), 'receipts', ['fiscal_year'], unique=False)
    op.create_index(op.f('ix_receipts_processing_status'), 'receipts', ['processing_status'], unique=False)
    op.create_index('ix_receipts_account_created_at', 'receipts', ['account_id', 'created_at'], unique=False)

    op.create_table('tax_rates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('fuel_type', sa.String(), nullable=False, server_default='Motor Fuel'),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('base_rate', sa.Numeric(10, 3), nullable=False),
        sa.Column('increase', sa.Numeric(10, 3), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tax_rates_id'), 'tax_rates', ['id'], unique=False)
    op.create_index('ix_tax_rates_fuel_type_start', 'tax_rates', ['fuel_type', 'start_date'], unique=False)

    op.create_table('account_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_year', sa.String(length=9), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='trial'),
        sa.Column('trial_started_at', sa.DateTime(), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('receipt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('receipt_limit', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'fiscal_year', name='uq_account_subscriptions_account_fy')
    )
    op.create_index(op.f('ix_account_subscriptions_id'), 'account_subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_account_subscriptions_account_id'), 'account_subscriptions', ['account_id'], unique=False)

    op.create_table('receipt_packs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_year', sa.String(length=9), nullable=False),
        sa.Column('receipts_added', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('payment_reference', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_reference')
    )
    op.create_index(op.f('ix_receipt_packs_id'), 'receipt_packs', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_packs_account_id'), 'receipt_packs', ['account_id'], unique=False)

    op.create_table('extraction_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('receipt_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('message_id', sa.String(), nullable=True),
        sa.Column('enqueued_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['receipt_id'], ['receipts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('receipt_id')
    )
    op.create_index(op.f('ix_extraction_jobs_status'), 'extraction_jobs', ['status'], unique=False)

    op.create_table('billing_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('fiscal_year', sa.String(length=9), nullable=True),
        sa.Column('outcome', sa.String(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade():
    op.drop_table('billing_events')
    op.drop_index(op.f('ix_extraction_jobs_status'), table_name='extraction_jobs')
    op.drop_table('extraction_jobs')
    op.drop_index(op.f('ix_receipt_packs_account_id'), table_name='receipt_packs')
    op.drop_index(op.f('ix_receipt_packs_id'), table_name='receipt_packs')
    op.drop_table('receipt_packs')
    op.drop_index(op.f('ix_account_subscriptions_account_id'), table_name='account_subscriptions')
    op.drop_index(op.f('ix_account_subscriptions_id'), table_name='account_subscriptions')
    op.drop_table('account_subscriptions')
    op.drop_index('ix_tax_rates_fuel_type_start', table_name='tax_rates')
    op.drop_index(op.f('ix_tax_rates_id'), table_name='tax_rates')
    op.drop_table('tax_rates')
    op.drop_index('ix_receipts_account_created_at', table_name='receipts')
    op.drop_index(op.f('ix_receipts_processing_status'), table_name='receipts')
    op.drop_index(op.f('ix_receipts_fiscal_year'), table_name='receipts')
    op.drop_index(op.f('ix_receipts_account_id'), table_name='receipts')
    op.drop_index(op.f('ix_receipts_id'), table_name='receipts')
    op.drop_table('receipts')
