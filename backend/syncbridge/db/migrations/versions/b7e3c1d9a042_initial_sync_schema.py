"""initial sync schema: installations, connections, sync jobs, logs, onboarding

Revision ID: b7e3c1d9a042
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'b7e3c1d9a042'
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')
ACTIVE_WHERE = sa.text("state IN ('queued', 'running')")


def upgrade() -> None:
    op.create_table(
        'installations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('shop_domain', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('scopes', sa.String(length=1024), nullable=True),
        sa.Column('webhooks_registered_at', sa.DateTime(), nullable=True),
        sa.Column('webhook_error', sa.Text(), nullable=True),
        sa.Column('installed_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('uninstalled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_installations'),
    )
    op.create_index('ix_installations_shop_domain', 'installations', ['shop_domain'], unique=True)

    op.create_table(
        'oauth_states',
        sa.Column('state', sa.String(length=64), nullable=False),
        sa.Column('shop_domain', sa.String(length=255), nullable=False),
        sa.Column('invite_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('state', name='pk_oauth_states'),
    )
    op.create_index('ix_oauth_states_expires_at', 'oauth_states', ['expires_at'])

    op.create_table(
        'connections',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('installation_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('platform', sa.String(length=32), nullable=False),
        sa.Column('dest_key', sa.String(length=512), nullable=False),
        sa.Column('dest_shop_domain', sa.String(length=255), nullable=True),
        sa.Column('dest_access_token', sa.Text(), nullable=True),
        sa.Column('base_url', sa.String(length=512), nullable=True),
        sa.Column('consumer_key', sa.String(length=255), nullable=True),
        sa.Column('consumer_secret', sa.Text(), nullable=True),
        sa.Column('dest_location_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('disabled_reason', sa.String(length=64), nullable=True),
        sa.Column('sync_price', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sync_categories', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('sync_tags', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('sync_collections', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('create_missing', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('publish_new', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('mapping_rules', JSON_TYPE, nullable=False),
        sa.Column('delete_requested_at', sa.DateTime(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_connections'),
        sa.ForeignKeyConstraint(
            ['installation_id'], ['installations.id'],
            name='fk_connections_installation_id_installations', ondelete='CASCADE',
        ),
        sa.UniqueConstraint('installation_id', 'platform', 'dest_key', name='uq_connections_destination'),
        sa.CheckConstraint("platform IN ('shopify','woocommerce')", name='ck_connections_platform'),
        sa.CheckConstraint("status IN ('active','paused','disabled')", name='ck_connections_status'),
    )
    op.create_index('ix_connections_installation_id', 'connections', ['installation_id'])
    op.create_index('ix_connections_status', 'connections', ['status'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('connection_id', sa.String(length=36), nullable=False),
        sa.Column('job_type', sa.String(length=16), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('trigger', sa.String(length=16), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('retry_of_id', sa.String(length=36), nullable=True),
        sa.Column('retry_enqueued', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('retryable', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('scope_skus', JSON_TYPE, nullable=True),
        sa.Column('total', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('completed', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('failed', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('plan_ready', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('plan_summary', JSON_TYPE, nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_sync_jobs'),
        sa.ForeignKeyConstraint(
            ['connection_id'], ['connections.id'],
            name='fk_sync_jobs_connection_id_connections', ondelete='CASCADE',
        ),
        sa.CheckConstraint("state IN ('queued','running','succeeded','failed','dead')", name='ck_sync_jobs_state'),
        sa.CheckConstraint("job_type IN ('full_sync','incremental','preview')", name='ck_sync_jobs_job_type'),
    )
    # 单飞：同一 connection 最多一个 queued/running
    op.create_index(
        'uq_sync_jobs_active_connection', 'sync_jobs', ['connection_id'],
        unique=True, postgresql_where=ACTIVE_WHERE, sqlite_where=ACTIVE_WHERE,
    )
    op.create_index('ix_sync_jobs_connection_queued', 'sync_jobs', ['connection_id', 'queued_at'])
    op.create_index('ix_sync_jobs_state', 'sync_jobs', ['state'])

    op.create_table(
        'sync_job_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_sync_job_items'),
        sa.ForeignKeyConstraint(
            ['job_id'], ['sync_jobs.id'],
            name='fk_sync_job_items_job_id_sync_jobs', ondelete='CASCADE',
        ),
        sa.UniqueConstraint('job_id', 'position', name='uq_sync_job_items_position'),
    )
    op.create_index('ix_sync_job_items_job_state', 'sync_job_items', ['job_id', 'state', 'position'])
    op.create_index('ix_sync_job_items_sku', 'sync_job_items', ['sku'])

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('connection_id', sa.String(length=36), nullable=True),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('shop_domain', sa.String(length=255), nullable=True),
        sa.Column('level', sa.String(length=8), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('sku', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_sync_logs'),
        sa.ForeignKeyConstraint(
            ['connection_id'], ['connections.id'],
            name='fk_sync_logs_connection_id_connections', ondelete='CASCADE',
        ),
        sa.CheckConstraint("level IN ('info','warn','error')", name='ck_sync_logs_level'),
    )
    op.create_index('ix_sync_logs_connection_created', 'sync_logs', ['connection_id', 'created_at'])
    op.create_index('ix_sync_logs_shop_created', 'sync_logs', ['shop_domain', 'created_at'])

    op.create_table(
        'connection_templates',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('installation_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('platform', sa.String(length=32), nullable=False),
        sa.Column('config', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_connection_templates'),
        sa.ForeignKeyConstraint(
            ['installation_id'], ['installations.id'],
            name='fk_connection_templates_installation_id_installations', ondelete='CASCADE',
        ),
    )
    op.create_index('ix_connection_templates_installation_id', 'connection_templates', ['installation_id'])

    op.create_table(
        'connection_invites',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('installation_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('dest_shop_domain', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('connection_id', sa.String(length=36), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_connection_invites'),
        sa.ForeignKeyConstraint(
            ['installation_id'], ['installations.id'],
            name='fk_connection_invites_installation_id_installations', ondelete='CASCADE',
        ),
        sa.UniqueConstraint('token', name='uq_connection_invites_token'),
        sa.CheckConstraint("status IN ('pending','accepted','expired')", name='ck_connection_invites_status'),
    )
    op.create_index('ix_connection_invites_installation_id', 'connection_invites', ['installation_id'])
    op.create_index('ix_connection_invites_status', 'connection_invites', ['installation_id', 'status'])

    op.create_table(
        'schedules',
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('hours', sa.String(length=64), nullable=False),
        sa.Column('window_minutes', sa.Integer(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('key', name='pk_schedules'),
        sa.CheckConstraint('window_minutes >= 1 AND window_minutes <= 59', name='ck_schedules_window_minutes'),
    )
    op.create_index('ix_schedules_enabled', 'schedules', ['enabled'])


def downgrade() -> None:
    op.drop_index('ix_schedules_enabled', table_name='schedules')
    op.drop_table('schedules')
    op.drop_index('ix_connection_invites_status', table_name='connection_invites')
    op.drop_index('ix_connection_invites_installation_id', table_name='connection_invites')
    op.drop_table('connection_invites')
    op.drop_index('ix_connection_templates_installation_id', table_name='connection_templates')
    op.drop_table('connection_templates')
    op.drop_index('ix_sync_logs_shop_created', table_name='sync_logs')
    op.drop_index('ix_sync_logs_connection_created', table_name='sync_logs')
    op.drop_table('sync_logs')
    op.drop_index('ix_sync_job_items_sku', table_name='sync_job_items')
    op.drop_index('ix_sync_job_items_job_state', table_name='sync_job_items')
    op.drop_table('sync_job_items')
    op.drop_index('ix_sync_jobs_state', table_name='sync_jobs')
    op.drop_index('ix_sync_jobs_connection_queued', table_name='sync_jobs')
    op.drop_index('uq_sync_jobs_active_connection', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_index('ix_connections_status', table_name='connections')
    op.drop_index('ix_connections_installation_id', table_name='connections')
    op.drop_table('connections')
    op.drop_index('ix_oauth_states_expires_at', table_name='oauth_states')
    op.drop_table('oauth_states')
    op.drop_index('ix_installations_shop_domain', table_name='installations')
    op.drop_table('installations')
