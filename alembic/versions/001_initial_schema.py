"""Initial schema: pool keys, balances, deposits, withdrawals, ledger, scan cursors.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def amount_column(name: str, **kwargs) -> sa.Column:
    # SQLite stores exact decimal strings (see poolwallet.ledger.models.Amount)
    if op.get_bind().dialect.name == 'sqlite':
        return sa.Column(name, sa.String(64), **kwargs)
    return sa.Column(name, sa.Numeric(36, 18), **kwargs)


def upgrade() -> None:
    # Pool settlement addresses
    op.create_table(
        'pool_addresses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        sa.Column('address', sa.String(128), nullable=False),
        sa.Column('derivation_path', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pool_addresses_asset_active', 'pool_addresses', ['asset', 'is_active'])

    # Encrypted pool keys
    op.create_table(
        'encrypted_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        sa.Column('iv', sa.String(64), nullable=False),
        sa.Column('ciphertext', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('asset'),
    )

    # Balances table
    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        amount_column('amount', nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'asset', name='uq_balances_user_asset'),
        sa.CheckConstraint('CAST(amount AS REAL) >= 0', name='ck_balances_non_negative'),
    )

    # Deposits table
    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        amount_column('amount', nullable=False),
        sa.Column('pool_address', sa.String(128), nullable=False),
        sa.Column('tx_hash', sa.String(128), nullable=False),
        sa.Column('from_address', sa.String(128), nullable=True),
        sa.Column('block_height', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('claimed_by', sa.String(64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('asset', 'tx_hash', name='uq_deposits_asset_tx'),
    )
    op.create_index('ix_deposits_status', 'deposits', ['status'])
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])

    # Withdrawals table
    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        amount_column('amount', nullable=False),
        amount_column('fee_amount', nullable=False),
        amount_column('net_amount', nullable=False),
        sa.Column('destination_address', sa.String(128), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('approved_by', sa.String(64), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('needs_reconciliation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('ix_withdrawals_user_id', 'withdrawals', ['user_id'])
    op.create_index('ix_withdrawals_tx_hash', 'withdrawals', ['tx_hash'])

    # Ledger transactions (one row per balance mutation)
    op.create_table(
        'ledger_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        sa.Column('entry_type', sa.String(30), nullable=False),
        amount_column('amount', nullable=False),
        sa.Column('deposit_id', sa.Integer(), nullable=True),
        sa.Column('withdrawal_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_ledger_transactions_user_asset', 'ledger_transactions', ['user_id', 'asset']
    )

    # Deposit intents (automatic claim matching)
    op.create_table(
        'deposit_intents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('asset', sa.String(10), nullable=False),
        amount_column('amount', nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('deposit_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_deposit_intents_match', 'deposit_intents', ['asset', 'amount', 'status']
    )

    # Deposit scanner positions
    op.create_table(
        'scan_cursors',
        sa.Column('chain', sa.String(20), nullable=False),
        sa.Column('block_height', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('chain'),
    )


def downgrade() -> None:
    op.drop_table('scan_cursors')
    op.drop_table('deposit_intents')
    op.drop_table('ledger_transactions')
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('balances')
    op.drop_table('encrypted_keys')
    op.drop_table('pool_addresses')
