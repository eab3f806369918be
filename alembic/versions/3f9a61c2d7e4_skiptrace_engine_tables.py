"""Skip-trace engine tables: runs, run items, provider call ledger, result cache

Revision ID: 3f9a61c2d7e4
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a61c2d7e4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'skiptrace_runs',
        sa.Column('run_id', sa.Text(), primary_key=True),
        sa.Column('source_label', sa.Text(), nullable=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('queued', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('in_flight', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('done', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('soft_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('budget_cap_cents', sa.Integer(), nullable=True),
        sa.Column('budget_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejected', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'skiptrace_run_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Text(), sa.ForeignKey('skiptrace_runs.run_id'), nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='queued'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('idem_key', sa.Text(), nullable=False),
        sa.Column('normalized_address', sa.Text(), nullable=True),
        sa.Column('normalized_person', sa.Text(), nullable=True),
        sa.Column('lead_attrs', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('served_from', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('run_id', 'lead_id', name='uq_run_item_run_lead'),
    )
    op.create_index('ix_run_items_run_status', 'skiptrace_run_items', ['run_id', 'status'])

    op.create_table(
        'provider_calls',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=False),
        sa.Column('payload_hash', sa.Text(), nullable=False),
        sa.Column('response_hash', sa.Text(), nullable=True),
        sa.Column('outcome', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('response_ms', sa.Integer(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('error_text', sa.Text(), nullable=True),
        sa.Column('simulated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('run_id', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'idempotency_key', name='ux_provider_idem'),
    )
    op.create_index('ix_provider_calls_run', 'provider_calls', ['run_id'])

    op.create_table(
        'skiptrace_cache',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=False),
        sa.Column('payload_hash', sa.Text(), nullable=False),
        sa.Column('response_json', sa.Text(), nullable=False),
        sa.Column('parsed_contacts_json', sa.Text(), nullable=False),
        sa.Column('ttl_expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'idempotency_key', name='ux_cache_key'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('skiptrace_cache')
    op.drop_index('ix_provider_calls_run', table_name='provider_calls')
    op.drop_table('provider_calls')
    op.drop_index('ix_run_items_run_status', table_name='skiptrace_run_items')
    op.drop_table('skiptrace_run_items')
    op.drop_table('skiptrace_runs')
