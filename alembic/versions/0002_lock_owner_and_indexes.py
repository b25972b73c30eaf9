"""Record the lock holder and index the run correlation columns

Revision ID: 0002_lock_owner_and_indexes
Revises: 0001_initial
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_lock_owner_and_indexes'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    """Add collection_lock.acquired_by, the run_attempts FK and lookup indexes."""

    with op.batch_alter_table('collection_lock') as batch:
        batch.add_column(sa.Column('acquired_by', sa.String(255), nullable=True))

    op.create_index('ix_run_attempts_failure_time', 'run_attempts', ['failure_time'])
    op.create_index('ix_activity_log_record_number', 'activity_log', ['record_number'])
    op.create_index('ix_activity_log_collection_batch_time', 'activity_log', ['collection_batch_time'])

    with op.batch_alter_table('activity_log') as batch:
        batch.create_foreign_key(
            'fk_activity_log_record_number', 'run_attempts', ['record_number'], ['record_number']
        )


def downgrade():
    """Drop the FK, indexes and holder column."""

    with op.batch_alter_table('activity_log') as batch:
        batch.drop_constraint('fk_activity_log_record_number', type_='foreignkey')

    op.drop_index('ix_activity_log_collection_batch_time', 'activity_log')
    op.drop_index('ix_activity_log_record_number', 'activity_log')
    op.drop_index('ix_run_attempts_failure_time', 'run_attempts')

    with op.batch_alter_table('collection_lock') as batch:
        batch.drop_column('acquired_by')
