"""Initial schema: users, sessions, tools, rentals with deposit ledger, tool request board

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

Tables:
1. users (tier + provenance + Stripe ids)
2. session_tokens (hashed opaque tokens)
3. tools (soft delete)
4. rental_transactions (state machine, money in pence, deposit ledger)
5. tool_requests / tool_request_upvotes (one upvote per member per request)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. USERS
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('username', sa.String(length=20), nullable=False),
        sa.Column('phone_number', sa.String(length=32), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('email_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verification_token_hash', sa.String(length=64), nullable=True),
        sa.Column('verification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('subscription_tier', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('tier_granted_by', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('paid_tier', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('tools_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_connect_account_id', sa.String(length=255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('verification_token_hash'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_stripe_customer', ['stripe_customer_id'], unique=False)

    # ==========================================================================
    # 2. SESSION TOKENS
    # ==========================================================================
    op.create_table('session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('session_tokens', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_session_tokens_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_token_hash'), ['token_hash'], unique=True)
        batch_op.create_index(batch_op.f('ix_session_tokens_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_is_revoked'), ['is_revoked'], unique=False)
        batch_op.create_index('ix_session_tokens_user_active', ['user_id', 'is_revoked'], unique=False)

    # ==========================================================================
    # 3. TOOLS
    # ==========================================================================
    op.create_table('tools',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('condition', sa.String(length=8), nullable=False, server_default='good'),
        sa.Column('daily_rate_cents', sa.Integer(), nullable=False),
        sa.Column('tool_value_cents', sa.Integer(), nullable=True),
        sa.Column('images', sa.JSON(), nullable=False),
        sa.Column('postcode', sa.String(length=10), nullable=True),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('daily_rate_cents > 0', name='ck_tools_daily_rate_positive'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('tools', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_tools_owner_id'), ['owner_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_tools_category'), ['category'], unique=False)
        batch_op.create_index('ix_tools_owner_available', ['owner_id', 'available'], unique=False)

    # ==========================================================================
    # 4. RENTAL TRANSACTIONS
    # ==========================================================================
    op.create_table('rental_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tool_id', sa.Integer(), nullable=False),
        sa.Column('renter_id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('daily_rate_cents', sa.Integer(), nullable=False),
        sa.Column('rental_cost_cents', sa.Integer(), nullable=False),
        sa.Column('deposit_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cost_cents', sa.Integer(), nullable=False),
        sa.Column('platform_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('owner_payout_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_payment'),
        sa.Column('stripe_checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('refund_id', sa.String(length=255), nullable=True),
        sa.Column('payout_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('payout_transfer_id', sa.String(length=255), nullable=True),
        sa.Column('payout_error', sa.Text(), nullable=True),
        sa.Column('payout_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('returned_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('deposit_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('claim_window_ends_at', sa.DateTime(), nullable=True),
        sa.Column('deposit_claim_reason', sa.Text(), nullable=True),
        sa.Column('deposit_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('deposit_released_at', sa.DateTime(), nullable=True),
        sa.Column('deposit_refund_id', sa.String(length=255), nullable=True),
        sa.Column('deposit_transfer_id', sa.String(length=255), nullable=True),
        sa.Column('deposit_transfer_error', sa.Text(), nullable=True),
        sa.Column('deposit_resolved_at', sa.DateTime(), nullable=True),
        sa.Column('deposit_resolved_by', sa.Integer(), nullable=True),
        sa.Column('deposit_admin_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('total_cost_cents = rental_cost_cents + deposit_amount_cents', name='ck_rental_total_cost'),
        sa.CheckConstraint('renter_id <> owner_id', name='ck_rental_not_self'),
        sa.CheckConstraint('end_date > start_date', name='ck_rental_dates'),
        sa.ForeignKeyConstraint(['tool_id'], ['tools.id'], ),
        sa.ForeignKeyConstraint(['renter_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['deposit_resolved_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_payment_intent_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('rental_transactions', schema=None) as batch_op:
        batch_op.create_index('ix_rental_tool_status', ['tool_id', 'status'], unique=False)
        batch_op.create_index('ix_rental_renter_status', ['renter_id', 'status'], unique=False)
        batch_op.create_index('ix_rental_owner_status', ['owner_id', 'status'], unique=False)
        batch_op.create_index('ix_rental_deposit_status', ['deposit_status'], unique=False)

    # ==========================================================================
    # 5. TOOL REQUEST BOARD
    # ==========================================================================
    op.create_table('tool_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tool_name', sa.String(length=100), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('postcode', sa.String(length=10), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('upvote_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('upvote_count >= 0', name='ck_tool_requests_upvotes_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('tool_requests', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_tool_requests_user_id'), ['user_id'], unique=False)
        batch_op.create_index('ix_tool_requests_status_upvotes', ['status', 'upvote_count'], unique=False)

    op.create_table('tool_request_upvotes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['request_id'], ['tool_requests.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('request_id', 'user_id', name='uq_tool_request_upvotes_request_user'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('tool_request_upvotes', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_tool_request_upvotes_request_id'), ['request_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_tool_request_upvotes_user_id'), ['user_id'], unique=False)


def downgrade():
    op.drop_table('tool_request_upvotes')
    op.drop_table('tool_requests')
    op.drop_table('rental_transactions')
    op.drop_table('tools')
    op.drop_table('session_tokens')
    op.drop_table('users')
