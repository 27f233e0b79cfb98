"""create challenge tables

Revision ID: b7e1c2d3a4f5
Revises:
Create Date: 2026-10-18 09:12:44.281530

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'b7e1c2d3a4f5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # 1. users
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('telegram_user_id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=True),
        sa.Column('first_name', sa.String(length=128), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='GMT+00:00'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('telegram_user_id')
    )

    # 2. challenges + global settings
    op.create_table(
        'challenges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('starts_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ends_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_challenges_status', 'challenges', ['status'])

    op.create_table(
        'global_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('challenge_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('voice_feedback_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.execute("INSERT INTO global_settings (id, challenge_active, voice_feedback_enabled) VALUES (1, true, true)")

    # 3. participations
    op.create_table(
        'participations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=False),
        sa.Column('wake_mode', sa.String(length=8), nullable=False, server_default='fixed'),
        sa.Column('wake_time_local', sa.String(length=5), nullable=True),
        sa.Column('wake_utc_minutes', sa.Integer(), nullable=True),
        sa.Column('joined_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('left_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'challenge_id', name='uq_participation_user_challenge')
    )
    op.create_index('ix_participations_user_id', 'participations', ['user_id'])
    op.create_index('ix_participations_challenge_id', 'participations', ['challenge_id'])

    # 4. checkins + voice transcripts + anti-cheat
    op.create_table(
        'checkins',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=False),
        sa.Column('checkin_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('local_date', sa.String(length=10), nullable=True),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('reject_reason', sa.String(length=64), nullable=True),
        sa.Column('requires_anticheat', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('anticheat_passed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('meta', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_checkins_user_challenge_at', 'checkins', ['user_id', 'challenge_id', 'checkin_at'])

    op.create_table(
        'voice_transcripts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('checkin_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('transcript', sa.Text(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('raw', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('reply_text', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkin_id')
    )

    op.create_table(
        'anti_cheat_challenges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('checkin_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('question', sa.String(length=128), nullable=False),
        sa.Column('expected_answer', sa.Integer(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkin_id')
    )
    op.create_index('ix_anti_cheat_challenges_user_id', 'anti_cheat_challenges', ['user_id'])

    # 5. buddies
    op.create_table(
        'buddy_pairs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=False),
        sa.Column('participation_a_id', sa.Integer(), nullable=False),
        sa.Column('participation_b_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('ended_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_buddy_pairs_challenge_id', 'buddy_pairs', ['challenge_id'])
    op.create_index('ix_buddy_pairs_participation_a_id', 'buddy_pairs', ['participation_a_id'])
    op.create_index('ix_buddy_pairs_participation_b_id', 'buddy_pairs', ['participation_b_id'])

    op.create_table(
        'buddy_waitlist',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('participation_id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='waiting'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('participation_id')
    )
    op.create_index('ix_buddy_waitlist_challenge_id', 'buddy_waitlist', ['challenge_id'])

    # 6. payments + ledger
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=True),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='yookassa'),
        sa.Column('provider_payment_id', sa.String(length=128), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='RUB'),
        sa.Column('plan_code', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_payment_id')
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('challenge_id', sa.Integer(), nullable=True),
        sa.Column('delta', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ledger_user_challenge_reason', 'ledger_entries', ['user_id', 'challenge_id', 'reason'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_ledger_user_challenge_reason', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('ix_payments_user_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_buddy_waitlist_challenge_id', table_name='buddy_waitlist')
    op.drop_table('buddy_waitlist')
    op.drop_index('ix_buddy_pairs_participation_b_id', table_name='buddy_pairs')
    op.drop_index('ix_buddy_pairs_participation_a_id', table_name='buddy_pairs')
    op.drop_index('ix_buddy_pairs_challenge_id', table_name='buddy_pairs')
    op.drop_table('buddy_pairs')
    op.drop_index('ix_anti_cheat_challenges_user_id', table_name='anti_cheat_challenges')
    op.drop_table('anti_cheat_challenges')
    op.drop_table('voice_transcripts')
    op.drop_index('ix_checkins_user_challenge_at', table_name='checkins')
    op.drop_table('checkins')
    op.drop_index('ix_participations_challenge_id', table_name='participations')
    op.drop_index('ix_participations_user_id', table_name='participations')
    op.drop_table('participations')
    op.drop_table('global_settings')
    op.drop_index('ix_challenges_status', table_name='challenges')
    op.drop_table('challenges')
    op.drop_table('users')
