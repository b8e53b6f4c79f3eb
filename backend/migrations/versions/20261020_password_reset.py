"""Password reset tokens on users

Revision ID: 20261020_password_reset
Revises: 20261019_initial
Create Date: 2026-10-20

Rentals gain the cancelled and expired statuses in this release as well;
status is a plain string column, so only users change.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261020_password_reset'
down_revision = '20261019_initial'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.add_column(sa.Column('password_reset_token_hash', sa.String(length=64), nullable=True))
        batch_op.add_column(sa.Column('password_reset_expires_at', sa.DateTime(), nullable=True))
        batch_op.create_unique_constraint('uq_users_password_reset_token_hash', ['password_reset_token_hash'])


def downgrade():
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.drop_constraint('uq_users_password_reset_token_hash', type_='unique')
        batch_op.drop_column('password_reset_expires_at')
        batch_op.drop_column('password_reset_token_hash')
