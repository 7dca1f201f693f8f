"""Billing core ledgers: webhook inbox, idempotency keys, provider configs.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Webhook inbox: one row per (provider, provider event id)
    op.create_table(
        'webhook_events',
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('provider', 'event_id'),
    )
    op.create_index('ix_webhook_events_processed_at', 'webhook_events', ['processed_at'])

    op.create_table(
        'idempotency_keys',
        sa.Column('key', sa.String(255), nullable=False),
        sa.Column('result', sa.Text(), nullable=True),
        sa.Column('result_hash', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('key'),
    )

    op.create_table(
        'provider_configs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('live_mode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('default_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('credentials_encrypted', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'provider', name='uq_provider_configs_tenant_provider'),
    )
    op.create_index('ix_provider_configs_tenant_id', 'provider_configs', ['tenant_id'])


def downgrade() -> None:
    op.drop_table('provider_configs')
    op.drop_table('idempotency_keys')
    op.drop_table('webhook_events')
