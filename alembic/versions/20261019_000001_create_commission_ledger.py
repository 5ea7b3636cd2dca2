"""Create commission ledger tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


MONEY = sa.DECIMAL(24, 8)
RATE_PERCENT = sa.DECIMAL(7, 4)
RATE_FRACTION = sa.DECIMAL(10, 8)


def upgrade() -> None:
    """Create participants, rate schedules, events log, ledger and aggregates."""

    op.create_table(
        'participants',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('handle', sa.String(50), nullable=True),
        sa.Column('referrer_handle', sa.String(255), nullable=True, comment='Raw handle from the host platform; may be malformed'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_participants'),
    )
    op.create_index('ix_participants_handle', 'participants', ['handle'], unique=True)
    op.create_index('ix_participants_referrer_handle', 'participants', ['referrer_handle'])

    op.create_table(
        'rate_schedules',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('rate_generation_1', RATE_PERCENT, nullable=False, comment='Percent of purchase amount'),
        sa.Column('rate_generation_2', RATE_PERCENT, nullable=False, comment='Percent of purchase amount'),
        sa.Column('rate_generation_3', RATE_PERCENT, nullable=False, comment='Percent of purchase amount'),
        sa.Column('effective_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('rate_generation_1 >= 0 AND rate_generation_1 <= 100', name='ck_rate_schedules_rate_generation_1_bounds'),
        sa.CheckConstraint('rate_generation_2 >= 0 AND rate_generation_2 <= 100', name='ck_rate_schedules_rate_generation_2_bounds'),
        sa.CheckConstraint('rate_generation_3 >= 0 AND rate_generation_3 <= 100', name='ck_rate_schedules_rate_generation_3_bounds'),
        sa.PrimaryKeyConstraint('id', name='pk_rate_schedules'),
    )
    op.create_index('ix_rate_schedules_effective_from', 'rate_schedules', ['effective_from'], unique=True)

    op.create_table(
        'purchase_events',
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('purchaser_id', sa.String(64), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('product_kind', sa.String(20), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('source_ref', sa.String(255), nullable=True),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('chain_captured_at', sa.DateTime(timezone=True), nullable=True, comment='Set once the chain snapshot is stored'),
        sa.Column('rolled_back_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rollback_reason', sa.Text(), nullable=True),
        sa.CheckConstraint('amount >= 0', name='ck_purchase_events_amount_non_negative'),
        sa.PrimaryKeyConstraint('event_id', name='pk_purchase_events'),
    )
    op.create_index('ix_purchase_events_occurred_at', 'purchase_events', ['occurred_at'])
    op.create_index('ix_purchase_events_purchaser_occurred', 'purchase_events', ['purchaser_id', 'occurred_at'])

    op.create_table(
        'chain_snapshots',
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('generation', sa.Integer(), nullable=False),
        sa.Column('beneficiary_id', sa.String(64), nullable=False),
        sa.Column('suppressed', sa.Boolean(), nullable=False, server_default='false', comment='Ancestor was not active at capture time'),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['event_id'], ['purchase_events.event_id'], name='fk_chain_snapshots_event_id_purchase_events', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('event_id', 'generation', name='pk_chain_snapshots'),
    )
    op.create_index('ix_chain_snapshots_beneficiary_id', 'chain_snapshots', ['beneficiary_id'])

    op.create_table(
        'commission_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('generation', sa.Integer(), nullable=False),
        sa.Column('beneficiary_id', sa.String(64), nullable=False),
        sa.Column('referred_id', sa.String(64), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('rate_applied', RATE_FRACTION, nullable=False, comment='Fraction applied (0.15 = 15%)'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('status_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('generation BETWEEN 1 AND 3', name='ck_commission_entries_generation_range'),
        sa.CheckConstraint('amount >= 0', name='ck_commission_entries_amount_non_negative'),
        sa.ForeignKeyConstraint(['event_id'], ['purchase_events.event_id'], name='fk_commission_entries_event_id_purchase_events', ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id', name='pk_commission_entries'),
    )
    op.create_index('ix_commission_entries_event_id', 'commission_entries', ['event_id'])
    op.create_index('ix_commission_entries_status', 'commission_entries', ['status'])
    op.create_index(
        'ix_commission_entries_beneficiary_status',
        'commission_entries',
        ['beneficiary_id', 'currency', 'status'],
    )
    # At most one active entry per (event, generation, beneficiary)
    op.create_index(
        'uq_commission_entries_active',
        'commission_entries',
        ['event_id', 'generation', 'beneficiary_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'beneficiary_aggregates',
        sa.Column('beneficiary_id', sa.String(64), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('total_earnings', MONEY, nullable=False, server_default='0'),
        sa.Column('generation_1_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generation_1_earnings', MONEY, nullable=False, server_default='0'),
        sa.Column('generation_2_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generation_2_earnings', MONEY, nullable=False, server_default='0'),
        sa.Column('generation_3_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generation_3_earnings', MONEY, nullable=False, server_default='0'),
        sa.Column('direct_referral_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='Bumped on every committed change'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('beneficiary_id', 'currency', name='pk_beneficiary_aggregates'),
    )

    op.create_table(
        'aggregate_referreds',
        sa.Column('beneficiary_id', sa.String(64), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('generation', sa.Integer(), nullable=False),
        sa.Column('referred_id', sa.String(64), nullable=False),
        sa.Column('active_entry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('beneficiary_id', 'currency', 'generation', 'referred_id', name='pk_aggregate_referreds'),
    )

    op.create_table(
        'reconciler_runs',
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('scope', sa.String(200), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('findings', sa.JSON(), nullable=False),
        sa.Column('actions', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('run_id', name='pk_reconciler_runs'),
    )
    op.create_index('ix_reconciler_runs_started_at', 'reconciler_runs', ['started_at'])

    op.create_table(
        'ledger_dead_letters',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(128), nullable=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('operation', sa.String(64), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('retry_safe', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_ledger_dead_letters'),
    )
    op.create_index('ix_ledger_dead_letters_event_id', 'ledger_dead_letters', ['event_id'])
    op.create_index('ix_ledger_dead_letters_kind', 'ledger_dead_letters', ['kind'])

    op.create_table(
        'admin_audit_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('actor', sa.String(64), nullable=False),
        sa.Column('target', sa.String(200), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_admin_audit_log'),
    )
    op.create_index('ix_admin_audit_log_action', 'admin_audit_log', ['action'])
    op.create_index('ix_admin_audit_log_target', 'admin_audit_log', ['target'])


def downgrade() -> None:
    """Drop commission ledger tables."""

    op.drop_index('ix_admin_audit_log_target', 'admin_audit_log')
    op.drop_index('ix_admin_audit_log_action', 'admin_audit_log')
    op.drop_table('admin_audit_log')

    op.drop_index('ix_ledger_dead_letters_kind', 'ledger_dead_letters')
    op.drop_index('ix_ledger_dead_letters_event_id', 'ledger_dead_letters')
    op.drop_table('ledger_dead_letters')

    op.drop_index('ix_reconciler_runs_started_at', 'reconciler_runs')
    op.drop_table('reconciler_runs')

    op.drop_table('aggregate_referreds')
    op.drop_table('beneficiary_aggregates')

    op.drop_index('uq_commission_entries_active', 'commission_entries')
    op.drop_index('ix_commission_entries_beneficiary_status', 'commission_entries')
    op.drop_index('ix_commission_entries_status', 'commission_entries')
    op.drop_index('ix_commission_entries_event_id', 'commission_entries')
    op.drop_table('commission_entries')

    op.drop_index('ix_chain_snapshots_beneficiary_id', 'chain_snapshots')
    op.drop_table('chain_snapshots')

    op.drop_index('ix_purchase_events_purchaser_occurred', 'purchase_events')
    op.drop_index('ix_purchase_events_occurred_at', 'purchase_events')
    op.drop_table('purchase_events')

    op.drop_index('ix_rate_schedules_effective_from', 'rate_schedules')
    op.drop_table('rate_schedules')

    op.drop_index('ix_participants_referrer_handle', 'participants')
    op.drop_index('ix_participants_handle', 'participants')
    op.drop_table('participants')
