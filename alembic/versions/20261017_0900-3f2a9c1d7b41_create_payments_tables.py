"""create_payments_tables

Revision ID: 3f2a9c1d7b41
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('internal_id', sa.String(length=36), nullable=False, comment='内部支付ID (UUID)'),
        sa.Column('provider_reference', sa.String(length=255), nullable=False, comment='支付渠道的支付ID'),
        sa.Column('user_id', sa.String(length=128), nullable=False, comment='用户ID'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217 小写'),
        sa.Column('status', sa.String(length=50), nullable=False, comment='支付状态（渠道状态词表）'),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='card', comment='支付方式'),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True, comment='客户端幂等键'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('internal_id'),
        sa.UniqueConstraint('provider_reference'),
        comment='支付记录表'
    )

    # Create indexes
    op.create_index('ix_payments_user_id', 'payments', ['user_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'], unique=False)
    op.create_index('ix_payments_status_updated_at', 'payments', ['status', 'updated_at'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)
    op.create_index(
        'uq_payments_idempotency_key',
        'payments',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )

    # Create payment_config table
    op.create_table(
        'payment_config',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217 小写'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='价格（最小货币单位）'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('is_active', sa.Integer(), nullable=False, server_default='1', comment='是否启用'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_payment_config_amount_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('currency'),
    )


def downgrade() -> None:
    op.drop_table('payment_config')
    op.drop_index('uq_payments_idempotency_key', table_name='payments')
    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_status_updated_at', table_name='payments')
    op.drop_index('ix_payments_user_status', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_user_id', table_name='payments')
    op.drop_table('payments')
