# Overview: Service-layer operations for owner payout accounts (Stripe Connect onboarding).

"""
Owner payout accounts

An owner needs a Stripe Connect account before accepting a rental, since
acceptance pays them straight away. Onboarding creates the Express account
once, stores its id and hands back a Stripe-hosted link; Stripe collects
the owner's details and sends them back to the dashboard.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import User


def start_onboarding(user: User) -> dict:
    gateway = current_app.extensions["payments"]

    if not user.stripe_connect_account_id:
        account_id = gateway.create_connect_account(user.email)
        user.stripe_connect_account_id = account_id
        db.session.commit()
        current_app.logger.info("Connect account %s created for user %s", account_id, user.id)

    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    url = gateway.create_account_link(
        user.stripe_connect_account_id,
        refresh_url=f"{app_url}/dashboard?connect=refresh",
        return_url=f"{app_url}/dashboard?connect=success",
    )
    return {"account_id": user.stripe_connect_account_id, "url": url}


def get_connect_status(user: User) -> dict:
    if not user.stripe_connect_account_id:
        return {
            "connected": False,
            "details_submitted": False,
            "charges_enabled": False,
            "payouts_enabled": False,
        }

    status = current_app.extensions["payments"].retrieve_account_status(user.stripe_connect_account_id)
    return {
        "connected": True,
        "details_submitted": status.details_submitted,
        "charges_enabled": status.charges_enabled,
        "payouts_enabled": status.payouts_enabled,
    }
