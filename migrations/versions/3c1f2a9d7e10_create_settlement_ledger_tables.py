"""create settlement ledger tables

Revision ID: 3c1f2a9d7e10
Revises:
Create Date: 2025-11-20 09:12:44.310871

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1f2a9d7e10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=80), nullable=False, unique=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('available_balance', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0.00')),
        sa.Column('lifetime_earnings', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0.00')),
        sa.Column('referral_code', sa.String(length=20), nullable=False, unique=True),
        sa.Column('referred_by_code', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_accounts_role', 'accounts', ['role'])
    op.create_index('ix_accounts_referred_by_code', 'accounts', ['referred_by_code'])

    op.create_table(
        'investments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('plan_name', sa.String(length=100), nullable=True),
        sa.Column('principal', sa.Numeric(18, 2), nullable=False),
        sa.Column('daily_return', sa.Numeric(18, 2), nullable=False),
        sa.Column('term_days', sa.Integer(), nullable=False),
        sa.Column('remaining_days', sa.Integer(), nullable=False),
        sa.Column('total_earned', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0.00')),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        sa.Column('last_credit_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('remaining_days >= 0', name='chk_remaining_days_non_negative'),
    )
    op.create_index('ix_investments_account_id', 'investments', ['account_id'])
    op.create_index('idx_investment_status_remaining', 'investments', ['status', 'remaining_days'])

    op.create_table(
        'roi_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('investment_id', sa.Integer(), sa.ForeignKey('investments.id'), nullable=False),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('credit_date', sa.Date(), nullable=False),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('investment_id', 'credit_date', name='uq_roi_history_investment_day'),
    )
    op.create_index('ix_roi_history_investment_id', 'roi_history', ['investment_id'])
    op.create_index('ix_roi_history_account_id', 'roi_history', ['account_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_transactions_account_id', 'transactions', ['account_id'])
    op.create_index('ix_transactions_reference', 'transactions', ['reference'])
    op.create_index('idx_transaction_account_created', 'transactions', ['account_id', 'created_at'])

    op.create_table(
        'referral_commissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('beneficiary_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('source_account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('investment_id', sa.Integer(), sa.ForeignKey('investments.id'), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('credit_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('level >= 1 AND level <= 5', name='chk_commission_level_range'),
        sa.UniqueConstraint('investment_id', 'credit_date', 'level', name='uq_commission_investment_day_level'),
    )
    op.create_index('ix_referral_commissions_beneficiary_id', 'referral_commissions', ['beneficiary_id'])
    op.create_index('ix_referral_commissions_source_account_id', 'referral_commissions', ['source_account_id'])
    op.create_index('ix_referral_commissions_investment_id', 'referral_commissions', ['investment_id'])

    op.create_table(
        'settlement_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_date', sa.String(length=10), nullable=False, unique=True),
        sa.Column('mode', sa.String(length=20), nullable=False),
        sa.Column('investments_processed', sa.Integer(), nullable=False),
        sa.Column('investments_failed', sa.Integer(), nullable=False),
        sa.Column('investments_skipped', sa.Integer(), nullable=False),
        sa.Column('failed_investment_ids', sa.JSON(), nullable=False),
        sa.Column('total_roi', sa.Numeric(18, 2), nullable=False),
        sa.Column('total_commissions', sa.Numeric(18, 2), nullable=False),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=120), nullable=False),
        sa.Column('message', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_notifications_account_id', 'notifications', ['account_id'])


def downgrade():
    op.drop_table('notifications')
    op.drop_table('settlement_runs')
    op.drop_table('referral_commissions')
    op.drop_table('transactions')
    op.drop_table('roi_history')
    op.drop_table('investments')
    op.drop_table('accounts')
