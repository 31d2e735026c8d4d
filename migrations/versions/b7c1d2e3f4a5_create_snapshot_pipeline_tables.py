"""create_snapshot_pipeline_tables

Revision ID: b7c1d2e3f4a5
Revises:
Create Date: 2026-01-02 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
import sqlmodel

# revision identifiers, used by Alembic.
revision = 'b7c1d2e3f4a5'
down_revision = None
branch_labels = None
depends_on = None

SNAPSHOT_JOB_STATUSES = (
    'RECEIVED', 'REQUESTED', 'WAITING_RESULT', 'DOWNLOADING', 'DOWNLOADED', 'PROCESSING',
    'PROCESSED', 'DOWNLOAD_FAILED', 'MISSING_SNAPSHOT', 'INVALID_SNAPSHOT', 'FAILED', 'DISCARDED',
)
FAILED_SNAPSHOT_STATUSES = ('PENDING', 'RETRYING', 'RESOLVED', 'EXHAUSTED')


def upgrade():
    op.create_table(
        'shops',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('provider', sa.Enum('SHOPTET', 'WOOCOMMERCE', name='shopprovider'), nullable=False),
        sa.Column('timezone', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('is_master', sa.Boolean(), nullable=False),
        sa.Column('api_token', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('api_mode', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('webhook_token', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('webhook_secret', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_shops_provider'), 'shops', ['provider'], unique=False)
    op.create_index(op.f('ix_shops_is_master'), 'shops', ['is_master'], unique=False)
    op.create_index(op.f('ix_shops_webhook_token'), 'shops', ['webhook_token'], unique=True)

    op.create_table(
        'job_schedules',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('job_type', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('cron_expression', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('timezone', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('shop_id', sa.Integer(), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_job_schedules_job_type'), 'job_schedules', ['job_type'], unique=False)
    op.create_index(op.f('ix_job_schedules_enabled'), 'job_schedules', ['enabled'], unique=False)
    op.create_index(op.f('ix_job_schedules_shop_id'), 'job_schedules', ['shop_id'], unique=False)

    op.create_table(
        'job_schedule_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.Uuid(), nullable=False),
        sa.Column('status', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('message', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('shops_processed', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['schedule_id'], ['job_schedules.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_job_schedule_runs_schedule_id'), 'job_schedule_runs', ['schedule_id'], unique=False)
    op.create_index(op.f('ix_job_schedule_runs_status'), 'job_schedule_runs', ['status'], unique=False)
    op.create_index(op.f('ix_job_schedule_runs_created_at'), 'job_schedule_runs', ['created_at'], unique=False)

    op.create_table(
        'shop_sync_cursors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('cursor', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'key', name='uq_shop_sync_cursor'),
    )
    op.create_index(op.f('ix_shop_sync_cursors_shop_id'), 'shop_sync_cursors', ['shop_id'], unique=False)

    op.create_table(
        'pipeline_executions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('pipeline_key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('status', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('requested_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('downloaded_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pipeline_executions_shop_id'), 'pipeline_executions', ['shop_id'], unique=False)
    op.create_index(op.f('ix_pipeline_executions_pipeline_key'), 'pipeline_executions', ['pipeline_key'], unique=False)
    op.create_index(op.f('ix_pipeline_executions_status'), 'pipeline_executions', ['status'], unique=False)
    op.create_index(op.f('ix_pipeline_executions_finished_at'), 'pipeline_executions', ['finished_at'], unique=False)
    op.create_index(op.f('ix_pipeline_executions_created_at'), 'pipeline_executions', ['created_at'], unique=False)

    op.create_table(
        'pipeline_locks',
        sa.Column('lock_key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=True),
        sa.Column('pipeline_key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('owner', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('lock_key'),
    )
    op.create_index(op.f('ix_pipeline_locks_shop_id'), 'pipeline_locks', ['shop_id'], unique=False)
    op.create_index(op.f('ix_pipeline_locks_expires_at'), 'pipeline_locks', ['expires_at'], unique=False)

    op.create_table(
        'snapshot_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('job_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('event', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('endpoint', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('status', sa.Enum(*SNAPSHOT_JOB_STATUSES, name='snapshotjobstatus'), nullable=False),
        sa.Column('result_url', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('snapshot_path', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'job_id', name='uq_snapshot_job_shop_job'),
    )
    op.create_index(op.f('ix_snapshot_jobs_shop_id'), 'snapshot_jobs', ['shop_id'], unique=False)
    op.create_index(op.f('ix_snapshot_jobs_job_id'), 'snapshot_jobs', ['job_id'], unique=False)
    op.create_index(op.f('ix_snapshot_jobs_status'), 'snapshot_jobs', ['status'], unique=False)
    op.create_index(op.f('ix_snapshot_jobs_created_at'), 'snapshot_jobs', ['created_at'], unique=False)

    op.create_table(
        'failed_snapshots',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('snapshot_job_id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('endpoint', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('status', sa.Enum(*FAILED_SNAPSHOT_STATUSES, name='failedsnapshotstatus'), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('error_message', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('first_failed_at', sa.DateTime(), nullable=False),
        sa.Column('last_failed_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['snapshot_job_id'], ['snapshot_jobs.id']),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_failed_snapshots_snapshot_job_id'), 'failed_snapshots', ['snapshot_job_id'], unique=True)
    op.create_index(op.f('ix_failed_snapshots_shop_id'), 'failed_snapshots', ['shop_id'], unique=False)
    op.create_index(op.f('ix_failed_snapshots_status'), 'failed_snapshots', ['status'], unique=False)

    op.create_table(
        'snapshot_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('guid', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('name', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('variant_codes', sa.JSON(), nullable=True),
        sa.Column('change_time', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'guid', name='uq_snapshot_product'),
    )
    op.create_index(op.f('ix_snapshot_products_shop_id'), 'snapshot_products', ['shop_id'], unique=False)
    op.create_index(op.f('ix_snapshot_products_guid'), 'snapshot_products', ['guid'], unique=False)

    op.create_table(
        'snapshot_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('guid', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('status', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('customer_guid', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('change_time', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('items', sa.JSON(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'code', name='uq_snapshot_order'),
    )
    op.create_index(op.f('ix_snapshot_orders_shop_id'), 'snapshot_orders', ['shop_id'], unique=False)
    op.create_index(op.f('ix_snapshot_orders_code'), 'snapshot_orders', ['code'], unique=False)
    op.create_index(op.f('ix_snapshot_orders_status'), 'snapshot_orders', ['status'], unique=False)
    op.create_index(op.f('ix_snapshot_orders_customer_guid'), 'snapshot_orders', ['customer_guid'], unique=False)

    op.create_table(
        'snapshot_customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=False),
        sa.Column('guid', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('email', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('change_time', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['shop_id'], ['shops.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_id', 'guid', name='uq_snapshot_customer'),
    )
    op.create_index(op.f('ix_snapshot_customers_shop_id'), 'snapshot_customers', ['shop_id'], unique=False)
    op.create_index(op.f('ix_snapshot_customers_guid'), 'snapshot_customers', ['guid'], unique=False)
    op.create_index(op.f('ix_snapshot_customers_email'), 'snapshot_customers', ['email'], unique=False)

    op.create_table(
        'variant_metrics',
        sa.Column('variant_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('orders_count', sa.Integer(), nullable=False),
        sa.Column('quantity_sold', sa.Float(), nullable=False),
        sa.Column('last_order_at', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('recalculated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('variant_code'),
    )


def downgrade():
    op.drop_table('variant_metrics')
    op.drop_table('snapshot_customers')
    op.drop_table('snapshot_orders')
    op.drop_table('snapshot_products')
    op.drop_table('failed_snapshots')
    op.drop_table('snapshot_jobs')
    op.drop_table('pipeline_locks')
    op.drop_table('pipeline_executions')
    op.drop_table('shop_sync_cursors')
    op.drop_table('job_schedule_runs')
    op.drop_table('job_schedules')
    op.drop_table('shops')
    sa.Enum(name='failedsnapshotstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='snapshotjobstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='shopprovider').drop(op.get_bind(), checkfirst=True)
