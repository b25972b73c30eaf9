"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    lock = op.create_table(
        'collection_lock',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('running', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('lock_acquired_at', sa.DateTime, nullable=True),
    )
    op.bulk_insert(lock, [{'id': 1, 'running': 0}])

    op.create_table(
        'run_attempts',
        sa.Column('record_number', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('failure_time', sa.DateTime, nullable=False),
    )

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('record_number', sa.Integer, nullable=False),
        sa.Column('collection_batch_time', sa.DateTime, nullable=False),
        sa.Column('dd_hh_mm_ss_mss', sa.String(32), nullable=True),
        sa.Column('session_id', sa.Integer, nullable=True),
        sa.Column('sql_text', sa.Text, nullable=True),
        sa.Column('sql_command', sa.Text, nullable=True),
        sa.Column('login_name', sa.String(128), nullable=True),
        sa.Column('wait_info', sa.String(4000), nullable=True),
        sa.Column('tran_log_writes', sa.String(4000), nullable=True),
        sa.Column('cpu', sa.String(30), nullable=True),
        sa.Column('tempdb_allocations', sa.String(30), nullable=True),
        sa.Column('tempdb_current', sa.String(30), nullable=True),
        sa.Column('blocking_session_id', sa.Integer, nullable=True),
        sa.Column('reads', sa.String(30), nullable=True),
        sa.Column('writes', sa.String(30), nullable=True),
        sa.Column('physical_reads', sa.String(30), nullable=True),
        sa.Column('query_plan', sa.Text, nullable=True),
        sa.Column('used_memory', sa.String(30), nullable=True),
        sa.Column('status', sa.String(30), nullable=True),
        sa.Column('tran_start_time', sa.DateTime, nullable=True),
        sa.Column('implicit_tran', sa.String(3), nullable=True),
        sa.Column('open_tran_count', sa.String(30), nullable=True),
        sa.Column('percent_complete', sa.String(30), nullable=True),
        sa.Column('host_name', sa.String(128), nullable=True),
        sa.Column('database_name', sa.String(128), nullable=True),
        sa.Column('program_name', sa.String(128), nullable=True),
        sa.Column('start_time', sa.DateTime, nullable=True),
        sa.Column('login_time', sa.DateTime, nullable=True),
        sa.Column('request_id', sa.Integer, nullable=True),
        sa.Column('collection_time', sa.DateTime, nullable=True),
        sa.Column('row_collected_at', sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table('activity_log')
    op.drop_table('run_attempts')
    op.drop_table('collection_lock')
