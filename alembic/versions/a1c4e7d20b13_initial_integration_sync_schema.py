"""initial_integration_sync_schema

Revision ID: a1c4e7d20b13
Revises:
Create Date: 2026-10-19 09:14:27.318402

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c4e7d20b13'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'api_credentials',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('access_token', sa.String(), nullable=True),
        sa.Column('refresh_token', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('realm_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('service', 'user_id', name='uq_api_credentials_service_user'),
    )
    op.create_index('ix_api_credentials_service', 'api_credentials', ['service'])
    op.create_index('ix_api_credentials_user_id', 'api_credentials', ['user_id'])
    op.create_index('ix_api_credentials_realm_id', 'api_credentials', ['realm_id'])

    op.create_table(
        'webhook_receipts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('object_id', sa.String(), nullable=True),
        sa.Column('realm_id', sa.String(), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_receipts_service', 'webhook_receipts', ['service'])
    op.create_index('ix_webhook_receipts_event_type', 'webhook_receipts', ['event_type'])
    op.create_index('ix_webhook_receipts_realm_id', 'webhook_receipts', ['realm_id'])
    op.create_index('ix_webhook_receipts_user_id', 'webhook_receipts', ['user_id'])
    op.create_index('ix_webhook_receipts_processed_created', 'webhook_receipts', ['processed', 'created_at'])

    op.create_table(
        'entity_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=True),
        sa.Column('realm_id', sa.String(), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=False),
        sa.Column('source_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'external_id', 'user_id', name='uq_entity_records_type_external_user'),
    )
    op.create_index('ix_entity_records_entity_type', 'entity_records', ['entity_type'])
    op.create_index('ix_entity_records_user_id', 'entity_records', ['user_id'])

    op.create_table(
        'cache_entries',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('cache_key', sa.String(), nullable=False),
        sa.Column('cache_data', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'cache_key', name='uq_cache_entries_user_key'),
    )
    op.create_index('ix_cache_entries_user_id', 'cache_entries', ['user_id'])

    op.create_table(
        'sync_statuses',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'service', name='uq_sync_statuses_user_service'),
    )
    op.create_index('ix_sync_statuses_user_id', 'sync_statuses', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_sync_statuses_user_id', table_name='sync_statuses')
    op.drop_table('sync_statuses')
    op.drop_index('ix_cache_entries_user_id', table_name='cache_entries')
    op.drop_table('cache_entries')
    op.drop_index('ix_entity_records_user_id', table_name='entity_records')
    op.drop_index('ix_entity_records_entity_type', table_name='entity_records')
    op.drop_table('entity_records')
    op.drop_index('ix_webhook_receipts_processed_created', table_name='webhook_receipts')
    op.drop_index('ix_webhook_receipts_user_id', table_name='webhook_receipts')
    op.drop_index('ix_webhook_receipts_realm_id', table_name='webhook_receipts')
    op.drop_index('ix_webhook_receipts_event_type', table_name='webhook_receipts')
    op.drop_index('ix_webhook_receipts_service', table_name='webhook_receipts')
    op.drop_table('webhook_receipts')
    op.drop_index('ix_api_credentials_realm_id', table_name='api_credentials')
    op.drop_index('ix_api_credentials_user_id', table_name='api_credentials')
    op.drop_index('ix_api_credentials_service', table_name='api_credentials')
    op.drop_table('api_credentials')
