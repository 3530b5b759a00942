"""Initial ledger schema

Revision ID: 001
Revises: 
Create Date: 2025-09-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create client_rate_cards table
    op.create_table('client_rate_cards',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('expires_on', sa.Date(), nullable=True),
        sa.Column('base_rules', sa.JSON(), nullable=False),
        sa.Column('sla_rules', sa.JSON(), nullable=False),
        sa.Column('sla_cap_percent', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_client_rate_cards_client_id', 'client_rate_cards', ['client_id'])
    op.create_index('ix_rate_cards_client_effective', 'client_rate_cards', ['client_id', 'status', 'effective_from'])

    # Create client_sla_metrics table
    op.create_table('client_sla_metrics',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('metric', sa.String(length=16), nullable=False),
        sa.Column('value', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_client_sla_metrics_client_id', 'client_sla_metrics', ['client_id'])

    # Create invoices table
    op.create_table('invoices',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('invoice_number', sa.String(length=32), nullable=True),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('rate_card_id', sa.String(length=36), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('subtotal_paise', sa.Integer(), nullable=False),
        sa.Column('tax_paise', sa.Integer(), nullable=False),
        sa.Column('sla_adjustment_paise', sa.Integer(), nullable=False),
        sa.Column('total_paise', sa.Integer(), nullable=False),
        sa.Column('cod_detected_paise', sa.Integer(), nullable=False),
        sa.Column('shipment_ids', sa.JSON(), nullable=False),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('sla_adjustments', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('status_before_dispute', sa.String(length=16), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('generated_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['rate_card_id'], ['client_rate_cards.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number')
    )
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_client_period', 'invoices', ['client_id', 'period_start', 'period_end'])

    # Create shipments table (mirror of the shipment feed)
    op.create_table('shipments',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('awb', sa.String(length=64), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('geo_type', sa.String(length=32), nullable=False),
        sa.Column('shipment_type', sa.String(length=32), nullable=False),
        sa.Column('payment_mode', sa.String(length=16), nullable=False),
        sa.Column('cod_amount_paise', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.Column('billed_invoice_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['billed_invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('awb')
    )
    op.create_index('ix_shipments_client_id', 'shipments', ['client_id'])
    op.create_index('ix_shipments_billed_invoice_id', 'shipments', ['billed_invoice_id'])
    op.create_index('ix_shipments_client_status_closed', 'shipments', ['client_id', 'status', 'closed_at'])

    # Create document_sequences table
    op.create_table('document_sequences',
        sa.Column('scope', sa.String(length=32), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('scope')
    )

    # Create receivables table
    op.create_table('receivables',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('invoice_id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('total_paise', sa.Integer(), nullable=False),
        sa.Column('amount_paid_paise', sa.Integer(), nullable=False),
        sa.Column('credit_applied_paise', sa.Integer(), nullable=False),
        sa.Column('debit_applied_paise', sa.Integer(), nullable=False),
        sa.Column('balance_paise', sa.Integer(), nullable=False),
        sa.Column('unapplied_credit_paise', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_id')
    )
    op.create_index('ix_receivables_client_id', 'receivables', ['client_id'])
    op.create_index('ix_receivables_client_status', 'receivables', ['client_id', 'status'])

    # Create collection_records table
    op.create_table('collection_records',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('receivable_id', sa.String(length=36), nullable=False),
        sa.Column('invoice_id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('amount_paise', sa.Integer(), nullable=False),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=128), nullable=True),
        sa.Column('self_service', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('recorded_by', sa.String(length=64), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.Column('reversed_by', sa.String(length=64), nullable=True),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.Column('reversal_reason', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['receivable_id'], ['receivables.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_collection_records_receivable_id', 'collection_records', ['receivable_id'])
    op.create_index('ix_collection_records_client_id', 'collection_records', ['client_id'])
    op.create_index('ix_collection_records_reference', 'collection_records', ['reference'])
    # A reference backs at most one successful collection
    op.create_index(
        'uq_collection_records_success_reference',
        'collection_records',
        ['reference'],
        unique=True,
        postgresql_where=sa.text("status = 'SUCCESS'"),
        sqlite_where=sa.text("status = 'SUCCESS'")
    )

    # Create financial_notes table
    op.create_table('financial_notes',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('note_number', sa.String(length=32), nullable=False),
        sa.Column('note_type', sa.String(length=8), nullable=False),
        sa.Column('invoice_id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('amount_paise', sa.Integer(), nullable=False),
        sa.Column('applied_amount_paise', sa.Integer(), nullable=False),
        sa.Column('unapplied_amount_paise', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('purpose', sa.String(length=24), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_by', sa.String(length=64), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('applied_by', sa.String(length=64), nullable=True),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('note_number')
    )
    op.create_index('ix_financial_notes_invoice_id', 'financial_notes', ['invoice_id'])
    op.create_index('ix_financial_notes_client_id', 'financial_notes', ['client_id'])
    op.create_index(
        'uq_financial_notes_invoice_purpose',
        'financial_notes',
        ['invoice_id', 'purpose'],
        unique=True
    )

    # Create compliance_events table
    op.create_table('compliance_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('actor_role', sa.String(length=32), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_compliance_events_event_type', 'compliance_events', ['event_type'])
    op.create_index('ix_compliance_events_correlation_id', 'compliance_events', ['correlation_id'])


def downgrade() -> None:
    op.drop_table('compliance_events')
    op.drop_table('financial_notes')
    op.drop_table('collection_records')
    op.drop_table('receivables')
    op.drop_table('document_sequences')
    op.drop_table('shipments')
    op.drop_table('invoices')
    op.drop_table('client_sla_metrics')
    op.drop_table('client_rate_cards')
