"""Initial schema - checkpoints, polls, ledger, votes, leaderboard

Revision ID: 001
Revises: 
Create Date: 2026-10-16 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


distribution_mode = sa.Enum('MANUAL_PULL', 'MANUAL_PUSH', 'AUTOMATED', name='distributionmode')
distribution_event_type = sa.Enum('distributed', 'claimed', 'withdrawn', name='distributioneventtype')


def upgrade() -> None:
    # Create checkpoints table
    op.create_table('checkpoints',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chain_id', sa.BigInteger(), nullable=False, comment='EVM chain id'),
        sa.Column('last_block_number', sa.BigInteger(), nullable=False, comment='Last block whose mutations have committed'),
        sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=False, comment='When the checkpoint last moved'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Row last update time'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('chain_id')
    )

    # Create polls table
    op.create_table('polls',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chain_id', sa.BigInteger(), nullable=False, comment='EVM chain id'),
        sa.Column('poll_id', sa.Numeric(precision=78, scale=0), nullable=False, comment='On-chain poll id'),
        sa.Column('distribution_mode', distribution_mode, nullable=False, comment='Current reward distribution mode'),
        sa.Column('creator', sa.String(length=42), nullable=True, comment='Creator address (lower-case)'),
        sa.Column('created_block', sa.BigInteger(), nullable=True, comment='Block of the PollCreated event'),
        sa.Column('created_tx_hash', sa.String(length=66), nullable=True, comment='Transaction of the PollCreated event'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Row last update time'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('chain_id', 'poll_id', name='uq_polls_chain_poll')
    )
    op.create_index('idx_polls_chain_id', 'polls', ['chain_id'])

    # Create distribution_logs table
    op.create_table('distribution_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('poll_id', sa.Integer(), nullable=False, comment='Projected poll row'),
        sa.Column('recipient', sa.String(length=42), nullable=False, comment='Recipient / claimer address (lower-case)'),
        sa.Column('amount', sa.String(length=78), nullable=False, comment='Raw token amount as a decimal string'),
        sa.Column('token', sa.String(length=42), nullable=False, comment='Token address, zero address for native ETH'),
        sa.Column('tx_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('log_index', sa.Integer(), nullable=False, comment='Log index within the block'),
        sa.Column('block_number', sa.BigInteger(), nullable=False, comment='Block number'),
        sa.Column('event_type', distribution_event_type, nullable=False, comment='distributed, claimed or withdrawn'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, comment='On-chain timestamp when the event carries one'),
        sa.ForeignKeyConstraint(['poll_id'], ['polls.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash', 'log_index', name='uq_distribution_logs_tx_log')
    )
    op.create_index('idx_distribution_logs_poll_id', 'distribution_logs', ['poll_id'])
    op.create_index('idx_distribution_logs_recipient', 'distribution_logs', ['recipient'])
    op.create_index('idx_distribution_logs_event_type', 'distribution_logs', ['event_type'])
    op.create_index('idx_distribution_logs_timestamp', 'distribution_logs', ['timestamp'])

    # Create vote_records table
    op.create_table('vote_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chain_id', sa.BigInteger(), nullable=False, comment='EVM chain id'),
        sa.Column('poll_id', sa.Numeric(precision=78, scale=0), nullable=False, comment='On-chain poll id'),
        sa.Column('voter', sa.String(length=42), nullable=False, comment='Voter address (lower-case)'),
        sa.Column('option_index', sa.Numeric(precision=78, scale=0), nullable=False, comment='Chosen option'),
        sa.Column('tx_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('log_index', sa.Integer(), nullable=False, comment='Log index within the block'),
        sa.Column('block_number', sa.BigInteger(), nullable=False, comment='Block number'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Row last update time'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash', 'log_index', name='uq_vote_records_tx_log')
    )
    op.create_index('idx_vote_records_poll_voter', 'vote_records', ['chain_id', 'poll_id', 'voter'])

    # Create leaderboard table
    op.create_table('leaderboard',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(length=42), nullable=False, comment='Participant address (lower-case)'),
        sa.Column('total_rewards', sa.Numeric(precision=78, scale=0), nullable=False, comment='Sum of distributed and claimed reward amounts'),
        sa.Column('polls_participated', sa.Integer(), nullable=False, comment='Distinct polls voted in'),
        sa.Column('total_votes', sa.Integer(), nullable=False, comment='Votes cast'),
        sa.Column('polls_created', sa.Integer(), nullable=False, comment='Polls created'),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False, comment='Last aggregate change'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('address')
    )
    op.create_index('idx_leaderboard_total_rewards', 'leaderboard', ['total_rewards'])
    op.create_index('idx_leaderboard_total_votes', 'leaderboard', ['total_votes'])
    op.create_index('idx_leaderboard_polls_participated', 'leaderboard', ['polls_participated'])


def downgrade() -> None:
    op.drop_table('leaderboard')
    op.drop_table('vote_records')
    op.drop_table('distribution_logs')
    op.drop_table('polls')
    op.drop_table('checkpoints')

    distribution_event_type.drop(op.get_bind(), checkfirst=True)
    distribution_mode.drop(op.get_bind(), checkfirst=True)
