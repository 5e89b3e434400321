"""listing_sync_initial

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLES = [
    'webhook_events',
    'sync_errors',
    'sync_cursors',
    'sync_locks',
    'sync_jobs',
    'media_mappings',
    'attachments',
    'field_specs',
    'system_settings',
    'listings',
]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table('listings'):
        op.create_table('listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=True),
        sa.Column('fields', sa.JSON(), nullable=False),
        sa.Column('field_modified_at', sa.JSON(), nullable=False),
        sa.Column('remote_record_id', sa.String(length=64), nullable=True),
        sa.Column('remote_last_modified', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('modified_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_listings_id'), 'listings', ['id'], unique=False)
        op.create_index(op.f('ix_listings_remote_record_id'), 'listings', ['remote_record_id'], unique=True)
        op.create_index(op.f('ix_listings_modified_at'), 'listings', ['modified_at'], unique=False)

    if not inspector.has_table('attachments'):
        op.create_table('attachments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=True),
        sa.Column('filename', sa.String(length=255), nullable=False),
        sa.Column('file_path', sa.String(length=1024), nullable=False),
        sa.Column('mime_type', sa.String(length=100), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('content_hash', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id']),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_attachments_id'), 'attachments', ['id'], unique=False)
        op.create_index(op.f('ix_attachments_listing_id'), 'attachments', ['listing_id'], unique=False)
        op.create_index(op.f('ix_attachments_content_hash'), 'attachments', ['content_hash'], unique=False)

    if not inspector.has_table('media_mappings'):
        op.create_table('media_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('field_name', sa.String(length=100), nullable=False),
        sa.Column('attachment_id', sa.Integer(), nullable=False),
        sa.Column('remote_attachment_id', sa.String(length=64), nullable=True),
        sa.Column('remote_fingerprint', sa.String(length=128), nullable=True),
        sa.Column('content_hash', sa.String(length=64), nullable=True),
        sa.Column('source', sa.String(length=10), nullable=False, server_default='remote'),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id']),
        sa.ForeignKeyConstraint(['attachment_id'], ['attachments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('listing_id', 'field_name', 'attachment_id', name='uq_media_mapping_attachment')
        )
        op.create_index(op.f('ix_media_mappings_id'), 'media_mappings', ['id'], unique=False)
        op.create_index(op.f('ix_media_mappings_listing_id'), 'media_mappings', ['listing_id'], unique=False)
        op.create_index(
            op.f('ix_media_mappings_remote_attachment_id'), 'media_mappings', ['remote_attachment_id'], unique=False
        )

    if not inspector.has_table('sync_jobs'):
        op.create_table('sync_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('mode', sa.String(length=10), nullable=False),
        sa.Column('force_full', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('media_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('changes_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('degraded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_kind', sa.String(length=30), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_sync_jobs_status'), 'sync_jobs', ['status'], unique=False)
        op.create_index(op.f('ix_sync_jobs_started_at'), 'sync_jobs', ['started_at'], unique=False)

    if not inspector.has_table('sync_locks'):
        op.create_table('sync_locks',
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('holder_job_id', sa.String(length=36), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('name')
        )

    if not inspector.has_table('sync_cursors'):
        op.create_table('sync_cursors',
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('cursor_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('direction')
        )

    if not inspector.has_table('sync_errors'):
        op.create_table('sync_errors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('record_id', sa.String(length=64), nullable=True),
        sa.Column('error_kind', sa.String(length=30), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_sync_errors_id'), 'sync_errors', ['id'], unique=False)
        op.create_index(op.f('ix_sync_errors_job_id'), 'sync_errors', ['job_id'], unique=False)
        op.create_index(op.f('ix_sync_errors_created_at'), 'sync_errors', ['created_at'], unique=False)

    if not inspector.has_table('webhook_events'):
        op.create_table('webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=20), nullable=False),
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('remote_last_modified', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_webhook_events_id'), 'webhook_events', ['id'], unique=False)
        op.create_index(
            op.f('ix_webhook_events_idempotency_key'), 'webhook_events', ['idempotency_key'], unique=True
        )
        op.create_index(op.f('ix_webhook_events_record_id'), 'webhook_events', ['record_id'], unique=False)

    if not inspector.has_table('field_specs'):
        op.create_table('field_specs',
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('remote_field', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=30), nullable=False),
        sa.Column('data_type', sa.String(length=30), nullable=False, server_default='string'),
        sa.Column('allowed_values', sa.JSON(), nullable=True),
        sa.Column('media_type', sa.String(length=20), nullable=True),
        sa.Column('max_files', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('name'),
        sa.UniqueConstraint('remote_field')
        )

    if not inspector.has_table('system_settings'):
        op.create_table('system_settings',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('key')
        )
        op.create_index(op.f('ix_system_settings_key'), 'system_settings', ['key'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table in TABLES:
        if inspector.has_table(table):
            op.drop_table(table)
