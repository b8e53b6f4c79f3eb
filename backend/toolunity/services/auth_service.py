# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

Signup, password login and email verification.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, 12 in production)
- Minimum 8 characters, upper, lower, digit and special character
- Verification tokens are random, emailed once, stored as SHA-256 and
  expire after 24 hours
- Password reset links work the same way, expire after 15 minutes and
  revoke every session once used
- Session tokens managed separately (see session_service.py)
"""

from __future__ import annotations

import re
import secrets
from datetime import timedelta

import bcrypt
from flask import current_app

from ..errors import AuthenticationRequired, PreconditionFailed, ValidationFailed
from ..extensions import db
from ..models import User
from ..notifications import notify
from ..time_utils import utcnow
from .session_service import hash_token, revoke_all_user_sessions


VERIFICATION_TOKEN_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(minutes=15)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
MIN_PHONE_DIGITS = 10


def validate_password_strength(password: str) -> None:
    """
    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    if len(password or "") < 8:
        raise ValidationFailed("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        raise ValidationFailed("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise ValidationFailed("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        raise ValidationFailed("Password must contain at least one digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        raise ValidationFailed("Password must contain at least one special character")


def hash_password(password: str) -> str:
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def normalize_phone(phone_number: str | None) -> str | None:
    if not phone_number:
        return None
    digits = re.sub(r"[\s\-()+]", "", phone_number)
    if not digits.isdigit() or len(digits) < MIN_PHONE_DIGITS:
        raise ValidationFailed(f"Phone number must contain at least {MIN_PHONE_DIGITS} digits")
    return digits


def signup(email: str, username: str, password: str, phone_number: str | None = None) -> User:
    """
    Create a member and email them a verification link.

    New members start on tier none; listing a tool or subscribing is what
    unlocks borrowing.
    """
    email = (email or "").strip().lower()
    username = (username or "").strip()
    if not EMAIL_RE.match(email):
        raise ValidationFailed("Please enter a valid email address")
    if not USERNAME_RE.match(username):
        raise ValidationFailed("Username must be 3-20 letters, digits or underscores")
    phone = normalize_phone(phone_number)
    password_hash = hash_password(password)

    existing = db.session.query(User).filter(
        db.or_(User.email == email, User.username == username)
    ).first()
    if existing:
        raise PreconditionFailed("An account with that email or username already exists")

    user = User(
        email=email,
        username=username,
        phone_number=phone,
        password_hash=password_hash,
        subscription_tier="none",
        tier_granted_by="none",
        paid_tier="none",
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("User %s signed up", user.id)

    send_verification(user)
    return user


def authenticate(identifier: str, password: str) -> User:
    """Email or username plus password. Raises AuthenticationRequired on any mismatch."""
    identifier = (identifier or "").strip()
    user = db.session.query(User).filter(
        db.or_(User.email == identifier.lower(), User.username == identifier),
        User.is_active.is_(True),
    ).first()

    if not user or not verify_password(password or "", user.password_hash):
        raise AuthenticationRequired("Invalid email or password")

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def issue_verification_token(user: User) -> str:
    token = secrets.token_urlsafe(32)
    user.verification_token_hash = hash_token(token)
    user.verification_sent_at = utcnow()
    db.session.commit()
    return token


def send_verification(user: User) -> str | None:
    """Issue a fresh token and email it. Returns the token (None when already verified)."""
    if user.email_verified:
        return None
    token = issue_verification_token(user)
    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    notify(
        "verification",
        user.email,
        username=user.username,
        link=f"{app_url}/verify-email?token={token}",
    )
    return token


def resend_verification(user: User) -> str:
    if user.email_verified:
        raise PreconditionFailed("Email is already verified")
    return send_verification(user)


def verify_email(token: str) -> User:
    if not token:
        raise ValidationFailed("Verification token is required")

    user = db.session.query(User).filter_by(verification_token_hash=hash_token(token)).first()
    if not user:
        raise ValidationFailed("Invalid or already used verification link")
    if not user.verification_sent_at or utcnow() - user.verification_sent_at > VERIFICATION_TOKEN_TTL:
        raise ValidationFailed("Verification link has expired, please request a new one")

    user.email_verified = True
    user.verification_token_hash = None
    db.session.commit()
    current_app.logger.info("User %s verified their email", user.id)
    return user


def request_password_reset(email: str) -> str | None:
    """
    Email a reset link if the address belongs to an active member.

    Returns the token, or None for unknown addresses. Callers answer both
    cases the same way so the endpoint does not reveal who has an account.
    """
    email = (email or "").strip().lower()
    if not email:
        raise ValidationFailed("Email is required")

    user = db.session.query(User).filter_by(email=email, is_active=True).first()
    if not user:
        current_app.logger.info("Password reset requested for unknown email")
        return None

    token = secrets.token_urlsafe(32)
    user.password_reset_token_hash = hash_token(token)
    user.password_reset_expires_at = utcnow() + PASSWORD_RESET_TTL
    db.session.commit()

    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    notify(
        "password_reset",
        user.email,
        username=user.username,
        link=f"{app_url}/reset-password?token={token}",
        minutes=int(PASSWORD_RESET_TTL.total_seconds() // 60),
    )
    current_app.logger.info("Password reset link sent to user %s", user.id)
    return token


def reset_password(token: str, new_password: str) -> User:
    if not token or not new_password:
        raise ValidationFailed("Reset token and new password are required")

    user = db.session.query(User).filter_by(password_reset_token_hash=hash_token(token)).first()
    if not user:
        raise ValidationFailed("Invalid or already used reset link")
    if not user.password_reset_expires_at or user.password_reset_expires_at < utcnow():
        raise ValidationFailed("Reset link has expired, please request a new one")

    user.password_hash = hash_password(new_password)
    user.password_reset_token_hash = None
    user.password_reset_expires_at = None
    db.session.commit()

    revoked = revoke_all_user_sessions(user.id, reason="Password reset")
    current_app.logger.info("User %s reset their password (%d sessions revoked)", user.id, revoked)
    return user
