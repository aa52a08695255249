"""security_tables

Create the rate limit counter, security block and security audit log
tables backing the admission control layer.

Revision ID: c4e1a9d2b7f0
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'c4e1a9d2b7f0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'rate_limit_counter',
        sa.Column('key', sa.String(320), primary_key=True),
        sa.Column('endpoint', sa.String(64), nullable=False),
        sa.Column('identifier', sa.String(255), nullable=False),
        sa.Column('hits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_requests', sa.Integer(), nullable=False),
        sa.Column('window_ms', sa.BigInteger(), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reset_time', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_rate_limit_counter_identifier', 'rate_limit_counter', ['identifier', 'window_start'])
    op.create_index('ix_rate_limit_counter_window_start', 'rate_limit_counter', ['window_start'])

    op.create_table(
        'security_block',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('identifier', sa.String(255), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('blocked_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_security_block_identifier_expires', 'security_block', ['identifier', 'expires_at'])
    op.create_index('ix_security_block_expires', 'security_block', ['expires_at'])

    op.create_table(
        'security_audit_log',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('resource_type', sa.String(64), nullable=False),
        sa.Column('resource_id', sa.String(512), nullable=True),
        sa.Column('metadata_json', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_security_audit_log_actor', 'security_audit_log', ['actor_id', 'created_at'])
    op.create_index('ix_security_audit_log_action', 'security_audit_log', ['action', 'created_at'])


def downgrade() -> None:
    op.drop_table('security_audit_log')
    op.drop_table('security_block')
    op.drop_table('rate_limit_counter')
