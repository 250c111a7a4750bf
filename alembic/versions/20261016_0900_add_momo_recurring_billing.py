"""Add MoMo recurring billing tables

Revision ID: 20261016_0900
Revises: 
Create Date: 2026-10-16 09:00:00.000000

This migration adds:
- momo_subscriptions: Recurring mobile money subscriptions
  - At most one pending/active/overdue subscription per (user_id, tier),
    enforced by a partial unique index
  - version_id column for optimistic concurrency
- momo_payment_attempts: Append-only log of processed gateway references
  - Unique reference is the idempotency key for callbacks and polls
  - Stores the resulting subscription status so duplicates replay the same result
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic
revision = '20261016_0900'
down_revision = None
branch_labels = None
depends_on = None


LIVE_STATUS_FILTER = "status IN ('pending', 'active', 'overdue')"


def upgrade() -> None:
    op.create_table(
        'momo_subscriptions',
        # Primary key and timestamps
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        
        # Owner and tier
        sa.Column('user_id', sa.String(100), nullable=False, comment='Owner reference from the authentication provider'),
        sa.Column('tier', sa.String(50), nullable=False),
        
        # Payer details
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('network', sa.String(20), nullable=False),
        
        # Pricing
        sa.Column('amount', sa.Numeric(10, 2), nullable=False, comment='Charge per period in major currency units'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='GHS'),
        sa.Column('billing_period', sa.String(20), nullable=False, server_default='monthly'),
        
        # State
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('next_payment_date', sa.DateTime(), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('latest_reference', sa.String(100), nullable=True, comment='Most recent gateway reference issued for this subscription'),
        
        # Gateway mandate
        sa.Column('mandate_code', sa.String(100), nullable=True),
        sa.Column('mandate_token', sa.String(100), nullable=True),
        
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        
        sa.PrimaryKeyConstraint('id', name='pk_momo_subscriptions'),
    )
    op.create_index('ix_momo_subscriptions_user_id', 'momo_subscriptions', ['user_id'])
    op.create_index('ix_momo_subscriptions_latest_reference', 'momo_subscriptions', ['latest_reference'])
    op.create_index(
        'ix_momo_subscriptions_status_next_payment',
        'momo_subscriptions',
        ['status', 'next_payment_date'],
    )
    op.create_index(
        'uq_momo_subscriptions_live_user_tier',
        'momo_subscriptions',
        ['user_id', 'tier'],
        unique=True,
        sqlite_where=sa.text(LIVE_STATUS_FILTER),
        postgresql_where=sa.text(LIVE_STATUS_FILTER),
    )
    
    op.create_table(
        'momo_payment_attempts',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        
        sa.Column('reference', sa.String(100), nullable=False, comment='Gateway transaction reference (idempotency key)'),
        sa.Column('subscription_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('gateway_response_code', sa.String(50), nullable=True),
        sa.Column('amount_confirmed', sa.Numeric(10, 2), nullable=True),
        sa.Column('raw_metadata', sa.JSON(), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=False),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        
        sa.PrimaryKeyConstraint('id', name='pk_momo_payment_attempts'),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['momo_subscriptions.id'],
            name='fk_momo_payment_attempts_subscription_id_momo_subscriptions',
            ondelete='RESTRICT',
        ),
    )
    op.create_index('ix_momo_payment_attempts_reference', 'momo_payment_attempts', ['reference'], unique=True)
    op.create_index('ix_momo_payment_attempts_subscription_id', 'momo_payment_attempts', ['subscription_id'])


def downgrade() -> None:
    op.drop_table('momo_payment_attempts')
    op.drop_index('uq_momo_subscriptions_live_user_tier', table_name='momo_subscriptions')
    op.drop_index('ix_momo_subscriptions_status_next_payment', table_name='momo_subscriptions')
    op.drop_index('ix_momo_subscriptions_latest_reference', table_name='momo_subscriptions')
    op.drop_index('ix_momo_subscriptions_user_id', table_name='momo_subscriptions')
    op.drop_table('momo_subscriptions')
