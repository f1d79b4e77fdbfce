"""initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'user_accounts',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('payment_customer_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('credits >= 0', name='ck_user_accounts_credits_non_negative'),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('generation_id', sa.String(length=36), nullable=True),
        sa.Column('payment_session_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_transactions_idempotency_key'),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_generation_id', 'credit_transactions', ['generation_id'])
    op.create_index('ix_credit_transactions_payment_session_id', 'credit_transactions', ['payment_session_id'])

    op.create_table(
        'generations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('style_slug', sa.String(length=32), nullable=False),
        sa.Column('room_type', sa.String(length=32), nullable=False),
        sa.Column('transform_mode', sa.String(length=32), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('cost_credits', sa.Integer(), nullable=False),
        sa.Column('input_image_url', sa.String(length=1024), nullable=False),
        sa.Column('output_image_url', sa.String(length=1024), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('provider_job_id', sa.String(length=128), nullable=True),
        sa.Column('fail_reason', sa.String(length=255), nullable=True),
        sa.Column('hd_unlocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_session_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_generations_user_id', 'generations', ['user_id'])
    op.create_index('ix_generations_status', 'generations', ['status'])
    op.create_index('ix_generations_provider_job_id', 'generations', ['provider_job_id'])
    op.create_index('ix_generations_payment_session_id', 'generations', ['payment_session_id'])


def downgrade() -> None:
    op.drop_index('ix_generations_payment_session_id', table_name='generations')
    op.drop_index('ix_generations_provider_job_id', table_name='generations')
    op.drop_index('ix_generations_status', table_name='generations')
    op.drop_index('ix_generations_user_id', table_name='generations')
    op.drop_table('generations')
    op.drop_index('ix_credit_transactions_payment_session_id', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_generation_id', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('user_accounts')
