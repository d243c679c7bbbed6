"""Create users, tweets and ai_responses tables

Revision ID: 001
Revises:
Create Date: 2025-02-03 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist when Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('password_hash', sa.String(length=255), nullable=False),
            sa.Column('reset_token', sa.String(length=255), nullable=True),
            sa.Column('reset_token_expiry', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_reset_token', 'users', ['reset_token'])

    if 'tweets' not in existing_tables:
        op.create_table(
            'tweets',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
            sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
            sa.Column('tweet_id', sa.String(length=64), nullable=True),
            sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.CheckConstraint("status IN ('draft', 'completed', 'scheduled', 'sent')", name='ck_tweets_status'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_tweets_id', 'tweets', ['id'])
        op.create_index('ix_tweets_user_id', 'tweets', ['user_id'])
        op.create_index('ix_tweets_user_status', 'tweets', ['user_id', 'status'])
        op.create_index('ix_tweets_status_scheduled_for', 'tweets', ['status', 'scheduled_for'])
        op.create_index('ix_tweets_tweet_id', 'tweets', ['tweet_id'])

    if 'ai_responses' not in existing_tables:
        op.create_table(
            'ai_responses',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tweet_id', sa.Integer(), nullable=False),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('request_hash', sa.String(length=255), nullable=False),
            sa.Column('response_data', sa.JSON(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['tweet_id'], ['tweets.id'], ondelete='CASCADE'),
            sa.CheckConstraint(
                "type IN ('spelling', 'grammar', 'critique', 'curation')", name='ck_ai_responses_type'
            ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_ai_responses_id', 'ai_responses', ['id'])
        op.create_index('ix_ai_responses_tweet_id', 'ai_responses', ['tweet_id'])
        op.create_index('ix_ai_responses_type', 'ai_responses', ['type'])
        op.create_index('ix_ai_responses_request_hash', 'ai_responses', ['request_hash'], unique=True)


def downgrade() -> None:
    existing_tables = inspect(op.get_bind()).get_table_names()
    for table in ('ai_responses', 'tweets', 'users'):
        if table in existing_tables:
            op.drop_table(table)
