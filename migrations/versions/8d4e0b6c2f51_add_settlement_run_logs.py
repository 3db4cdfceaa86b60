"""add settlement run logs

Revision ID: 8d4e0b6c2f51
Revises: 3c1f2a9d7e10
Create Date: 2025-12-02 14:37:05.118402

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8d4e0b6c2f51'
down_revision = '3c1f2a9d7e10'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'settlement_run_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_date', sa.String(length=10), nullable=False),
        sa.Column('mode', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('investments_processed', sa.Integer(), nullable=False),
        sa.Column('investments_failed', sa.Integer(), nullable=False),
        sa.Column('investments_skipped', sa.Integer(), nullable=False),
        sa.Column('failed_investment_ids', sa.JSON(), nullable=False),
        sa.Column('total_roi', sa.Numeric(18, 2), nullable=False),
        sa.Column('total_commissions', sa.Numeric(18, 2), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )
    with op.batch_alter_table('settlement_run_logs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_settlement_run_logs_run_date'), ['run_date'], unique=False)
        batch_op.create_index(batch_op.f('ix_settlement_run_logs_status'), ['status'], unique=False)


def downgrade():
    with op.batch_alter_table('settlement_run_logs', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_settlement_run_logs_status'))
        batch_op.drop_index(batch_op.f('ix_settlement_run_logs_run_date'))

    op.drop_table('settlement_run_logs')
