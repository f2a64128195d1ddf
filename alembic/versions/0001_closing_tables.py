"""Closing tables: close drafts, lottery day close, settlements

Revision ID: 0001_closing_tables
Revises: 
Create Date: 2026-10-18

ENUMs are stored as VARCHAR (native_enum=False in models) so the same
migration runs on SQLite and PostgreSQL.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_closing_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    """Create all closing tables."""

    # Close drafts
    op.create_table('close_drafts',
        sa.Column('draft_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('scope_id', sa.String(length=36), nullable=False),
        sa.Column('business_date', sa.Date(), nullable=True),
        sa.Column('kind', sa.String(length=11), nullable=False),
        sa.Column('status', sa.String(length=11), server_default='IN_PROGRESS', nullable=False),
        sa.Column('step_marker', sa.String(length=7), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('finalize_result', sa.JSON(), nullable=True),
        sa.Column('finalizing_started_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(length=36), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('draft_id')
    )
    op.create_index(op.f('ix_close_drafts_store_id'), 'close_drafts', ['store_id'], unique=False)
    op.create_index('idx_close_draft_store_status', 'close_drafts', ['store_id', 'status'], unique=False)
    # At most one IN_PROGRESS/FINALIZING draft per shift
    op.create_index(
        'uq_close_draft_active_scope', 'close_drafts', ['store_id', 'scope_id'], unique=True,
        sqlite_where=sa.text("status IN ('IN_PROGRESS', 'FINALIZING')"),
        postgresql_where=sa.text("status IN ('IN_PROGRESS', 'FINALIZING')"),
    )

    # Lottery packs (read by the day close, owned by inventory)
    op.create_table('lottery_packs',
        sa.Column('pack_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('pack_number', sa.String(length=50), nullable=False),
        sa.Column('game_name', sa.String(length=255), nullable=False),
        sa.Column('bin_id', sa.String(length=36), nullable=True),
        sa.Column('bin_display_order', sa.Integer(), server_default='0', nullable=False),
        sa.Column('status', sa.String(length=8), server_default='RECEIVED', nullable=False),
        sa.Column('opening_serial', sa.String(length=3), nullable=True),
        sa.Column('ticket_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('tickets_per_pack', sa.Integer(), server_default='300', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('pack_id')
    )
    op.create_index(op.f('ix_lottery_packs_store_id'), 'lottery_packs', ['store_id'], unique=False)

    # Lottery business days
    op.create_table('lottery_business_days',
        sa.Column('day_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('business_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=13), server_default='OPEN', nullable=False),
        sa.Column('opened_at', sa.DateTime(), nullable=True),
        sa.Column('opened_by', sa.String(length=36), nullable=True),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.Column('closed_by', sa.String(length=36), nullable=True),
        sa.Column('total_sales', sa.Numeric(precision=15, scale=2), server_default='0.00', nullable=False),
        sa.Column('total_packs_sold', sa.Integer(), server_default='0', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('day_id'),
        sa.UniqueConstraint('store_id', 'business_date', name='uq_lottery_day_store_date')
    )
    op.create_index(op.f('ix_lottery_business_days_store_id'), 'lottery_business_days', ['store_id'], unique=False)
    op.create_index('idx_lottery_day_store_status', 'lottery_business_days', ['store_id', 'status'], unique=False)

    # Two-phase closing attempts
    op.create_table('lottery_closing_attempts',
        sa.Column('attempt_id', sa.String(length=36), nullable=False),
        sa.Column('day_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('phase', sa.String(length=9), server_default='PREPARED', nullable=False),
        sa.Column('prepared_closings', sa.JSON(), nullable=False),
        sa.Column('lottery_total', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('from_wizard', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('prepared_by', sa.String(length=36), nullable=False),
        sa.Column('prepared_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('commit_result', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['day_id'], ['lottery_business_days.day_id'], name='fk_lottery_attempt_day_id'),
        sa.PrimaryKeyConstraint('attempt_id')
    )
    op.create_index(op.f('ix_lottery_closing_attempts_store_id'), 'lottery_closing_attempts', ['store_id'], unique=False)
    op.create_index('idx_lottery_attempt_day_phase', 'lottery_closing_attempts', ['day_id', 'phase'], unique=False)
    op.create_index(
        'uq_lottery_attempt_prepared_day',
        'lottery_closing_attempts',
        ['day_id'],
        unique=True,
        sqlite_where=sa.text("phase = 'PREPARED'"),
        postgresql_where=sa.text("phase = 'PREPARED'"),
    )

    # Permanent pack closings
    op.create_table('lottery_day_packs',
        sa.Column('day_pack_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('day_id', sa.String(length=36), nullable=False),
        sa.Column('pack_id', sa.String(length=36), nullable=False),
        sa.Column('bin_id', sa.String(length=36), nullable=True),
        sa.Column('starting_serial', sa.String(length=3), nullable=False),
        sa.Column('ending_serial', sa.String(length=3), nullable=False),
        sa.Column('tickets_sold', sa.Integer(), nullable=False),
        sa.Column('sales_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('is_sold_out', sa.Boolean(), server_default=sa.false(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['day_id'], ['lottery_business_days.day_id'], name='fk_lottery_day_pack_day_id'),
        sa.PrimaryKeyConstraint('day_pack_id')
    )
    op.create_index(op.f('ix_lottery_day_packs_store_id'), 'lottery_day_packs', ['store_id'], unique=False)
    op.create_index(op.f('ix_lottery_day_packs_day_id'), 'lottery_day_packs', ['day_id'], unique=False)
    op.create_index('idx_lottery_day_pack_pack', 'lottery_day_packs', ['pack_id', 'created_at'], unique=False)

    # Settlements
    op.create_table('shift_settlements',
        sa.Column('settlement_id', sa.String(length=36), nullable=False),
        sa.Column('store_id', sa.String(length=36), nullable=False),
        sa.Column('scope_id', sa.String(length=36), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('closing_cash', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('lottery_total', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('payload_snapshot', sa.JSON(), nullable=False),
        sa.Column('settled_by', sa.String(length=36), nullable=False),
        sa.Column('settled_at', sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('settlement_id'),
        sa.UniqueConstraint('store_id', 'scope_id', name='uq_settlement_store_scope')
    )
    op.create_index(op.f('ix_shift_settlements_store_id'), 'shift_settlements', ['store_id'], unique=False)


def downgrade() -> None:
    """Drop all closing tables."""
    op.drop_table('shift_settlements')
    op.drop_table('lottery_day_packs')
    op.drop_index('uq_lottery_attempt_prepared_day', table_name='lottery_closing_attempts')
    op.drop_table('lottery_closing_attempts')
    op.drop_table('lottery_business_days')
    op.drop_table('lottery_packs')
    op.drop_index('uq_close_draft_active_scope', table_name='close_drafts')
    op.drop_table('close_drafts')
