from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/toolunity.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///toolunity.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_URL = os.environ.get("APP_URL", "http://localhost:3000")

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_CURRENCY = os.environ.get("STRIPE_CURRENCY", "gbp")
    STRIPE_CONNECT_COUNTRY = os.environ.get("STRIPE_CONNECT_COUNTRY", "GB")
    STRIPE_PRICE_BASIC = os.environ.get("STRIPE_PRICE_BASIC", "")
    STRIPE_PRICE_STANDARD = os.environ.get("STRIPE_PRICE_STANDARD", "")
    STRIPE_PRICE_PRO = os.environ.get("STRIPE_PRICE_PRO", "")
    # Development only: accept unsigned events from the Stripe CLI
    ALLOW_UNSIGNED_WEBHOOKS = _env_bool("ALLOW_UNSIGNED_WEBHOOKS", False)

    # Resend
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
    MAIL_FROM = os.environ.get("MAIL_FROM", "ToolUnity <noreply@toolunity.co.uk>")
    MAIL_TIMEOUT_SECONDS = float(os.environ.get("MAIL_TIMEOUT_SECONDS", "10"))

    # Bearer secret for the scheduler hitting /api/cron/*
    CRON_SECRET = os.environ.get("CRON_SECRET", "")

    # Rental economics and timing
    CLAIM_WINDOW_DAYS = int(os.environ.get("CLAIM_WINDOW_DAYS", "7"))
    APPROVAL_TIMEOUT_HOURS = int(os.environ.get("APPROVAL_TIMEOUT_HOURS", "48"))
    # Unpaid rentals expire after PAYMENT_TIMEOUT_HOURS; Stripe closes their
    # checkout sessions sooner, after CHECKOUT_EXPIRY_MINUTES (30 minimum)
    PAYMENT_TIMEOUT_HOURS = int(os.environ.get("PAYMENT_TIMEOUT_HOURS", "2"))
    CHECKOUT_EXPIRY_MINUTES = int(os.environ.get("CHECKOUT_EXPIRY_MINUTES", "60"))
    OWNER_PAYOUT_PERCENT = int(os.environ.get("OWNER_PAYOUT_PERCENT", "70"))
    MAX_RENTAL_DAYS = int(os.environ.get("MAX_RENTAL_DAYS", "30"))

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_CLEANUP_SECONDS = int(os.environ.get("RATE_LIMIT_CLEANUP_SECONDS", "300"))

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", False)
