"""Transfers table.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'transfers',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('user_address', sa.String(42), nullable=False),
        sa.Column('source_chain', sa.String(20), nullable=True),
        sa.Column('dest_chain', sa.String(20), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        # Deposit payload
        sa.Column('amount', sa.String(78), nullable=True),
        sa.Column('protocol', sa.Integer(), nullable=True),
        sa.Column('pool_address', sa.String(42), nullable=True),
        # Withdraw position snapshot
        sa.Column('pool_id', sa.Integer(), nullable=True),
        sa.Column('position_id', sa.String(66), nullable=True),
        sa.Column('position_owner', sa.String(42), nullable=True),
        sa.Column('principal_amount', sa.String(78), nullable=True),
        sa.Column('shares', sa.String(78), nullable=True),
        sa.Column('vault_address', sa.String(42), nullable=True),
        # Bridge progress
        sa.Column('source_tx_hash', sa.String(66), nullable=True),
        sa.Column('attestation_message', sa.Text(), nullable=True),
        sa.Column('attestation_proof', sa.Text(), nullable=True),
        sa.Column('dest_tx_hash', sa.String(66), nullable=True),
        sa.Column('pending_tx_hash', sa.String(66), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_transfers_direction_source_tx', 'transfers', ['direction', 'source_tx_hash'], unique=True
    )
    op.create_index('ix_transfers_user_direction', 'transfers', ['user_address', 'direction'])
    op.create_index('ix_transfers_status_created', 'transfers', ['status', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_transfers_status_created', table_name='transfers')
    op.drop_index('ix_transfers_user_direction', table_name='transfers')
    op.drop_index('ix_transfers_direction_source_tx', table_name='transfers')
    op.drop_table('transfers')
