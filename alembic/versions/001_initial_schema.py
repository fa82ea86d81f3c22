"""initial schema - users, credit ledger and receipts

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table (current_credits is a projection of the ledger)
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('current_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create credit_transactions table (type as VARCHAR, append-only)
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('expiration_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('receipt_id', sa.String(36), nullable=True, index=True),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # At most one PURCHASE row per payment reference
    op.create_index(
        'uq_credit_transactions_purchase_reference',
        'credit_transactions',
        ['payment_reference'],
        unique=True,
        postgresql_where=sa.text("type = 'PURCHASE' AND payment_reference IS NOT NULL"),
    )
    op.create_index(
        'ix_credit_transactions_user_created',
        'credit_transactions',
        ['user_id', 'created_at'],
    )

    # Create receipts table (one per PURCHASE transaction)
    op.create_table(
        'receipts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('credit_transactions.id'), nullable=False, unique=True),
        sa.Column('payment_reference', sa.String(255), nullable=False, index=True),
        sa.Column('charge_reference', sa.String(255), nullable=True),
        sa.Column('receipt_number', sa.String(100), nullable=False, unique=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('payment_method', sa.String(50), nullable=False),
        sa.Column('card_brand', sa.String(20), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('html_content', sa.Text(), nullable=True),
        sa.Column('download_token', sa.String(255), nullable=False, unique=True),
        sa.Column('download_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_downloaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('email_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('email_delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('receipts')
    op.drop_index('ix_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_index('uq_credit_transactions_purchase_reference', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('users')
