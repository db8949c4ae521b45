"""Create fiscal_invoices table

Revision ID: 001_fiscal_invoices
Revises:
Create Date: 2026-10-18

Invoices and credit notes authorized by ARCA/AFIP, plus sales waiting in the
retry queue. The unique constraint guarantees that no voucher number is
recorded twice for the same tenant, point of sale and voucher type.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_fiscal_invoices'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create fiscal_invoices with its retry and lookup indexes"""

    op.create_table(
        'fiscal_invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False, comment='Business that owns the invoice'),
        sa.Column('kind', sa.String(20), server_default='invoice', nullable=False, comment='invoice, credit_note'),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False, comment='pending, issued, credited, voided'),

        # Fiscal numbering
        sa.Column('point_of_sale', sa.Integer, nullable=True),
        sa.Column('voucher_type', sa.Integer, nullable=True, comment='WSFE CbteTipo: 1/6/11 invoice A/B/C, 3/8/13 credit note A/B/C'),
        sa.Column('voucher_number', sa.Integer, nullable=True),

        # Authorization
        sa.Column('cae', sa.String(20), nullable=True),
        sa.Column('cae_expires_on', sa.Date, nullable=True),
        sa.Column('fiscal_date', sa.Date, nullable=True, comment='Voucher date as authorized (CbteFch)'),

        # Commercial content
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_surname', sa.String(200), nullable=True),
        sa.Column('customer_id', UUID(as_uuid=True), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('total', sa.Numeric(14, 2), server_default='0', nullable=False),
        sa.Column('items', JSONB, server_default='[]', nullable=False),
        sa.Column('deposit_discount', sa.Numeric(14, 2), nullable=True),

        # Retry bookkeeping
        sa.Column('retry_attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('retry_last_error', sa.Text, nullable=True),
        sa.Column('retry_last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_next_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_payload', JSONB, nullable=True),
        sa.Column('ambiguous_voucher_number', sa.Integer, nullable=True),
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('claimed_until', sa.DateTime(timezone=True), nullable=True),

        # Provenance
        sa.Column('origin_kind', sa.String(30), nullable=True),
        sa.Column('origin_id', sa.String(64), nullable=True),
        sa.Column('related_invoice_id', UUID(as_uuid=True), nullable=True),
        sa.Column('credit_note_id', UUID(as_uuid=True), nullable=True),
        sa.Column('note', sa.Text, nullable=True),

        # Rendered document
        sa.Column('document_base64', sa.Text, nullable=True),
        sa.Column('document_bucket', sa.String(100), nullable=True),
        sa.Column('document_path', sa.String(500), nullable=True),
        sa.Column('document_filename', sa.String(200), nullable=True),
        sa.Column('document_content_type', sa.String(100), nullable=True),

        # Audit
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_by_username', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),

        sa.UniqueConstraint(
            'tenant_id', 'point_of_sale', 'voucher_type', 'voucher_number',
            name='uq_fiscal_invoices_voucher'
        ),
    )

    op.create_index('ix_fiscal_invoices_tenant_id', 'fiscal_invoices', ['tenant_id'])
    op.create_index('ix_fiscal_invoices_status', 'fiscal_invoices', ['status'])
    op.create_index('ix_fiscal_invoices_retry_due', 'fiscal_invoices', ['status', 'retry_next_at'])
    op.create_index('ix_fiscal_invoices_tenant_created', 'fiscal_invoices', ['tenant_id', 'created_at'])


def downgrade():
    """Drop fiscal_invoices"""
    op.drop_index('ix_fiscal_invoices_tenant_created', table_name='fiscal_invoices')
    op.drop_index('ix_fiscal_invoices_retry_due', table_name='fiscal_invoices')
    op.drop_index('ix_fiscal_invoices_status', table_name='fiscal_invoices')
    op.drop_index('ix_fiscal_invoices_tenant_id', table_name='fiscal_invoices')
    op.drop_table('fiscal_invoices')
