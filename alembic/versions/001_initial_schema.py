"""initial_schema_scans_credits_queue

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


scan_status = sa.Enum('pending', 'processing', 'success', 'failed', name='scanstatus')
queue_job_state = sa.Enum('waiting', 'active', 'completed', 'failed', 'delayed', name='queuejobstate')
credit_transaction_kind = sa.Enum('debit', 'credit', 'refund', name='credittransactionkind')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    # Create credit_balances table
    op.create_table(
        'credit_balances',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.CheckConstraint('amount >= 0', name='check_credit_balance_non_negative'),
    )
    op.create_index(op.f('ix_credit_balances_user_id'), 'credit_balances', ['user_id'], unique=False)

    # Create credit_transactions table
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('kind', credit_transaction_kind, nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('operation_key', sa.String(128), nullable=True),
        sa.Column('related_scan_id', sa.String(36), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation_key'),
    )
    op.create_index(op.f('ix_credit_transactions_user_id'), 'credit_transactions', ['user_id'], unique=False)
    op.create_index(op.f('ix_credit_transactions_related_scan_id'), 'credit_transactions', ['related_scan_id'], unique=False)

    # Create scans table
    op.create_table(
        'scans',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('sitemap_url', sa.String(2048), nullable=False),
        sa.Column('status', scan_status, nullable=False, server_default='pending'),
        sa.Column('total_urls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('job_id', sa.String(64), nullable=True),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_refunded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_scans_user_id'), 'scans', ['user_id'], unique=False)
    op.create_index(op.f('ix_scans_status'), 'scans', ['status'], unique=False)
    op.create_index(op.f('ix_scans_job_id'), 'scans', ['job_id'], unique=False)
    op.create_index('idx_scans_user_started', 'scans', ['user_id', 'started_at'], unique=False)

    # Create scan_results table
    op.create_table(
        'scan_results',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('scan_id', sa.String(36), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.Column('is_valid', sa.Boolean(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('warning_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_scan_results_scan_id'), 'scan_results', ['scan_id'], unique=False)
    op.create_index('idx_scan_results_scan_valid', 'scan_results', ['scan_id', 'is_valid'], unique=False)

    # Create scan_queue_jobs table
    op.create_table(
        'scan_queue_jobs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('scan_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('state', queue_job_state, nullable=False, server_default='waiting'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts_made', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('failed_reason', sa.Text(), nullable=True),
        sa.Column('return_value', sa.JSON(), nullable=True),
        sa.Column('processed_on', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_on', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_scan_queue_jobs_scan_id'), 'scan_queue_jobs', ['scan_id'], unique=False)
    op.create_index(op.f('ix_scan_queue_jobs_user_id'), 'scan_queue_jobs', ['user_id'], unique=False)
    op.create_index(op.f('ix_scan_queue_jobs_state'), 'scan_queue_jobs', ['state'], unique=False)
    op.create_index('idx_scan_queue_jobs_state_finished', 'scan_queue_jobs', ['state', 'finished_on'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_scan_queue_jobs_state_finished', table_name='scan_queue_jobs')
    op.drop_index(op.f('ix_scan_queue_jobs_state'), table_name='scan_queue_jobs')
    op.drop_index(op.f('ix_scan_queue_jobs_user_id'), table_name='scan_queue_jobs')
    op.drop_index(op.f('ix_scan_queue_jobs_scan_id'), table_name='scan_queue_jobs')
    op.drop_table('scan_queue_jobs')

    op.drop_index('idx_scan_results_scan_valid', table_name='scan_results')
    op.drop_index(op.f('ix_scan_results_scan_id'), table_name='scan_results')
    op.drop_table('scan_results')

    op.drop_index('idx_scans_user_started', table_name='scans')
    op.drop_index(op.f('ix_scans_job_id'), table_name='scans')
    op.drop_index(op.f('ix_scans_status'), table_name='scans')
    op.drop_index(op.f('ix_scans_user_id'), table_name='scans')
    op.drop_table('scans')

    op.drop_index(op.f('ix_credit_transactions_related_scan_id'), table_name='credit_transactions')
    op.drop_index(op.f('ix_credit_transactions_user_id'), table_name='credit_transactions')
    op.drop_table('credit_transactions')

    op.drop_index(op.f('ix_credit_balances_user_id'), table_name='credit_balances')
    op.drop_table('credit_balances')

    scan_status.drop(op.get_bind(), checkfirst=True)
    queue_job_state.drop(op.get_bind(), checkfirst=True)
    credit_transaction_kind.drop(op.get_bind(), checkfirst=True)
