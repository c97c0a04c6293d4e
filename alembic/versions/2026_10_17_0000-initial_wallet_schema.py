"""initial wallet schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _task_table(name: str, prefix: str) -> None:
    """video_tasks and image_tasks share one layout."""
    op.create_table(
        name,
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('mode', sa.String(50), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('aspect_ratio', sa.String(20), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('source_asset_url', sa.Text(), nullable=True),
        sa.Column('provider_task_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('provider_result_url', sa.Text(), nullable=True),
        sa.Column('result_url', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('credit_cost', sa.Integer(), nullable=False),
        sa.Column('credit_transaction_id', UUID(as_uuid=True), nullable=True),
        sa.Column('generate_retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('callback_retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('progress >= 0 AND progress <= 100', name=f'ck_{prefix}_progress'),
        sa.CheckConstraint('credit_cost >= 0', name=f'ck_{prefix}_cost_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'retrying', 'succeeded', 'error')",
            name=f'ck_{prefix}_status',
        ),
        sa.ForeignKeyConstraint(
            ['credit_transaction_id'], ['credit_transactions.id'],
            name=f'fk_{prefix}_credit_transaction', ondelete='SET NULL',
        ),
    )
    op.create_index(f'ix_{name}_user_id', name, ['user_id'])
    op.create_index(f'ix_{name}_provider_task_id', name, ['provider_task_id'])
    op.create_index(f'idx_{name}_user_created', name, ['user_id', 'created_at'])


def upgrade() -> None:
    """Create wallet, ledger, generation task and settings tables."""

    # ========================================================================
    # Create wallet_accounts table
    # ========================================================================
    op.create_table(
        'wallet_accounts',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('purchased_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('purchased_credits >= 0', name='ck_wallet_purchased_non_negative'),
    )

    # ========================================================================
    # Create wallet_subscriptions table
    # ========================================================================
    op.create_table(
        'wallet_subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('package_id', sa.String(100), nullable=False),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('daily_credits', sa.Integer(), nullable=False),
        sa.Column('daily_remaining', sa.Integer(), nullable=False),
        sa.Column('monthly_credits', sa.Integer(), nullable=False),
        sa.Column('monthly_remaining', sa.Integer(), nullable=False),
        sa.Column('monthly_cycle_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_grant_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('daily_credits >= 0', name='ck_subscription_daily_credits_non_negative'),
        sa.CheckConstraint('monthly_credits >= 0', name='ck_subscription_monthly_credits_non_negative'),
        sa.CheckConstraint(
            'daily_remaining >= 0 AND daily_remaining <= daily_credits',
            name='ck_subscription_daily_remaining_bounds',
        ),
        sa.CheckConstraint(
            'monthly_remaining >= 0 AND monthly_remaining <= monthly_credits',
            name='ck_subscription_monthly_remaining_bounds',
        ),
        sa.CheckConstraint('monthly_cycle_index >= 0', name='ck_subscription_cycle_non_negative'),
        sa.CheckConstraint('end_date >= start_date', name='ck_subscription_dates_ordered'),
        sa.CheckConstraint("status IN ('active', 'expired')", name='ck_subscription_status'),
        sa.ForeignKeyConstraint(
            ['user_id'], ['wallet_accounts.user_id'],
            name='fk_wallet_subscriptions_wallet', ondelete='CASCADE',
        ),
    )
    op.create_index('idx_wallet_subscriptions_user_status', 'wallet_subscriptions', ['user_id', 'status'])
    op.create_index('idx_wallet_subscriptions_end_date', 'wallet_subscriptions', ['end_date'])

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_before', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('reference_type', sa.String(50), nullable=True),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('source_transaction_id', UUID(as_uuid=True), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount >= 0', name='ck_credit_transaction_amount_non_negative'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transaction_balance_non_negative'),
        sa.CheckConstraint(
            "(type = 'deduction' AND balance_after = balance_before - amount) OR "
            "(type IN ('addition', 'refund') AND balance_after = balance_before + amount)",
            name='ck_credit_transaction_balance_delta',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['wallet_accounts.user_id'],
            name='fk_credit_transactions_wallet', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['source_transaction_id'], ['credit_transactions.id'],
            name='fk_credit_transactions_source', ondelete='SET NULL',
        ),
    )
    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index(
        'idx_credit_transactions_source', 'credit_transactions', ['source_transaction_id'],
        postgresql_where=sa.text('source_transaction_id IS NOT NULL'),
    )

    # ========================================================================
    # Create generation task tables
    # ========================================================================
    _task_table('video_tasks', 'video_task')
    _task_table('image_tasks', 'image_task')

    # ========================================================================
    # Create system_config table with default settings
    # ========================================================================
    system_config = op.create_table(
        'system_config',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_by', sa.String(255), nullable=True),
    )
    op.bulk_insert(
        system_config,
        [
            {'key': 'video_fast_credit_cost', 'value': '30', 'description': 'Credits per fast video'},
            {'key': 'video_quality_credit_cost', 'value': '100', 'description': 'Credits per quality video'},
            {'key': 'image_credit_cost', 'value': '10', 'description': 'Credits per image'},
            {'key': 'provider_enabled', 'value': 'true', 'description': 'Accept new generations'},
        ],
    )


def downgrade() -> None:
    """Drop all wallet tables."""
    op.drop_table('system_config')

    for name in ('image_tasks', 'video_tasks'):
        op.drop_index(f'idx_{name}_user_created', table_name=name)
        op.drop_index(f'ix_{name}_provider_task_id', table_name=name)
        op.drop_index(f'ix_{name}_user_id', table_name=name)
        op.drop_table(name)

    op.drop_index('idx_credit_transactions_source', table_name='credit_transactions')
    op.drop_index('idx_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')

    op.drop_index('idx_wallet_subscriptions_end_date', table_name='wallet_subscriptions')
    op.drop_index('idx_wallet_subscriptions_user_status', table_name='wallet_subscriptions')
    op.drop_table('wallet_subscriptions')

    op.drop_table('wallet_accounts')
