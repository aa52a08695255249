"""rate_limit_window

Keep closed rate limit windows so activity scoring can see the whole
lookback instead of only the live window per counter key.

Revision ID: e7b3f5a1c2d8
Revises: c4e1a9d2b7f0
Create Date: 2026-10-18 12:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'e7b3f5a1c2d8'
down_revision = 'c4e1a9d2b7f0'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'rate_limit_window',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('endpoint', sa.String(64), nullable=False),
        sa.Column('identifier', sa.String(255), nullable=False),
        sa.Column('hits', sa.Integer(), nullable=False),
        sa.Column('max_requests', sa.Integer(), nullable=False),
        sa.Column('window_ms', sa.BigInteger(), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reset_time', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_rate_limit_window_identifier', 'rate_limit_window', ['identifier', 'window_start'])
    op.create_index('ix_rate_limit_window_window_start', 'rate_limit_window', ['window_start'])


def downgrade() -> None:
    op.drop_table('rate_limit_window')
