"""Create twitter_tokens table and cached Twitter identity on users

Revision ID: 002
Revises: 001
Create Date: 2025-02-10 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

USER_TWITTER_COLUMNS = ('twitter_user_id', 'twitter_username', 'twitter_name')


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)

    if 'twitter_tokens' not in inspector.get_table_names():
        op.create_table(
            'twitter_tokens',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('access_token', sa.Text(), nullable=False),
            sa.Column('refresh_token', sa.Text(), nullable=True),
            sa.Column('twitter_user_id', sa.String(length=64), nullable=False),
            sa.Column('twitter_username', sa.String(length=255), nullable=False),
            sa.Column('twitter_name', sa.String(length=255), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_verified_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_twitter_tokens_id', 'twitter_tokens', ['id'])
        op.create_index('ix_twitter_tokens_user_id', 'twitter_tokens', ['user_id'], unique=True)
        op.create_index('ix_twitter_tokens_twitter_user_id', 'twitter_tokens', ['twitter_user_id'])

    existing_columns = [col['name'] for col in inspector.get_columns('users')]
    if 'twitter_user_id' not in existing_columns:
        op.add_column('users', sa.Column('twitter_user_id', sa.String(length=64), nullable=True))
    if 'twitter_username' not in existing_columns:
        op.add_column('users', sa.Column('twitter_username', sa.String(length=255), nullable=True))
    if 'twitter_name' not in existing_columns:
        op.add_column('users', sa.Column('twitter_name', sa.String(length=255), nullable=True))


def downgrade() -> None:
    inspector = inspect(op.get_bind())
    existing_columns = [col['name'] for col in inspector.get_columns('users')]
    for column in USER_TWITTER_COLUMNS:
        if column in existing_columns:
            op.drop_column('users', column)

    if 'twitter_tokens' in inspector.get_table_names():
        op.drop_table('twitter_tokens')
