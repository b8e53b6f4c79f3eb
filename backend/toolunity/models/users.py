from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class User(db.Model):
    """
    Marketplace member. Every member can both lend and borrow.

    Tier state:
    - subscription_tier: the effective tier used for every borrowing decision
    - tier_granted_by: provenance of that tier (none | payment | tool_waiver)
    - paid_tier: tier backed by an active Stripe subscription (none if none)

    tools_count is a cache refreshed by the tier service; the tools table is
    the source of truth.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_stripe_customer", "stripe_customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), nullable=False, unique=True)
    username = db.Column(db.String(20), nullable=False, unique=True)
    phone_number = db.Column(db.String(32), nullable=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    # SHA-256 of the emailed token (never the plaintext)
    verification_token_hash = db.Column(db.String(64), nullable=True, unique=True)
    verification_sent_at = db.Column(db.DateTime, nullable=True)
    # Same scheme for password reset links
    password_reset_token_hash = db.Column(db.String(64), nullable=True, unique=True)
    password_reset_expires_at = db.Column(db.DateTime, nullable=True)

    subscription_tier = db.Column(db.String(16), nullable=False, default="none")
    tier_granted_by = db.Column(db.String(16), nullable=False, default="none")
    paid_tier = db.Column(db.String(16), nullable=False, default="none")
    tools_count = db.Column(db.Integer, nullable=False, default=0)

    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True)
    # Stripe Connect account receiving owner payouts
    stripe_connect_account_id = db.Column(db.String(255), nullable=True)

    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    last_login_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_free_waiver(self) -> bool:
        return self.tier_granted_by == "tool_waiver"

    def to_dict(self, *, private: bool = False) -> dict:
        data = {
            "id": self.id,
            "username": self.username,
            "subscription_tier": self.subscription_tier,
            "created_at": to_utc_z(self.created_at),
        }
        if private:
            data.update({
                "email": self.email,
                "phone_number": self.phone_number,
                "email_verified": self.email_verified,
                "tier_granted_by": self.tier_granted_by,
                "is_free_waiver": self.is_free_waiver,
                "paid_tier": self.paid_tier,
                "tools_count": self.tools_count,
                "has_payout_account": bool(self.stripe_connect_account_id),
                "is_admin": self.is_admin,
                "last_login_at": to_utc_z(self.last_login_at),
            })
        return data


class SessionToken(db.Model):
    """
    Opaque login session.

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - 24-hour absolute timeout
    - 2-hour idle timeout
    - Revocable on logout
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False)
    last_used_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship("User", backref=db.backref("session_tokens", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }
