# Overview: Service-layer operations for Stripe webhooks; dispatches verified events to the domain services.

"""
Stripe webhook dispatch

Events arrive at least once and in any order. Every handler is idempotent:
a redelivered checkout completion finds the rental already past
pending_payment, an expired checkout only closes a rental still waiting on
that session, and a repeated subscription event re-applies the same tier.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import User
from . import rental_service, tier_service


INACTIVE_SUBSCRIPTION_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


def _find_user(user_id=None, customer_id: str | None = None) -> User | None:
    if user_id:
        try:
            user = db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            user = None
        if user:
            return user
    if customer_id:
        return db.session.query(User).filter_by(stripe_customer_id=customer_id).first()
    return None


def handle_checkout_completed(session: dict) -> dict:
    metadata = session.get("metadata") or {}

    if metadata.get("type") == "rental_payment" and metadata.get("rental_transaction_id"):
        rental, changed = rental_service.mark_payment_completed(
            int(metadata["rental_transaction_id"]),
            session.get("payment_intent"),
            checkout_session_id=session.get("id"),
        )
        return {"handled": "rental_payment", "rental_id": rental.id, "changed": changed}

    if session.get("subscription"):
        user = _find_user(
            metadata.get("user_id") or session.get("client_reference_id"),
            session.get("customer"),
        )
        if not user:
            current_app.logger.warning("Subscription checkout %s has no matching user", session.get("id"))
            return {"handled": "subscription", "user_id": None}

        gateway = current_app.extensions["payments"]
        tier = metadata.get("tier")
        if tier not in tier_service.PAID_TIERS and session.get("customer"):
            tier = gateway.retrieve_subscription_status(session["customer"]).tier
        if tier not in tier_service.PAID_TIERS:
            current_app.logger.warning("Subscription checkout %s maps to no paid tier", session.get("id"))
            return {"handled": "subscription", "user_id": user.id}

        tier_service.apply_paid_subscription(user, tier, session.get("customer"), session.get("subscription"))
        tier_service.recalculate_user_tier(user.id)
        return {"handled": "subscription", "user_id": user.id, "tier": tier}

    current_app.logger.info("Checkout session %s needs no action", session.get("id"))
    return {"handled": None}


def handle_checkout_expired(session: dict) -> dict:
    metadata = session.get("metadata") or {}
    if metadata.get("type") != "rental_payment" or not metadata.get("rental_transaction_id"):
        return {"handled": None}

    rental, changed = rental_service.mark_checkout_expired(
        int(metadata["rental_transaction_id"]), session.get("id")
    )
    return {"handled": "rental_checkout_expired", "rental_id": rental.id, "changed": changed}


def handle_subscription_updated(subscription: dict) -> dict:
    user = _find_user(customer_id=subscription.get("customer"))
    if not user:
        current_app.logger.warning("Subscription %s update for unknown customer", subscription.get("id"))
        return {"handled": "subscription_updated", "user_id": None}

    gateway = current_app.extensions["payments"]
    status = gateway.subscription_status_from_object(subscription)

    if status.is_active and status.tier in tier_service.PAID_TIERS:
        tier_service.apply_paid_subscription(user, status.tier, subscription_id=status.subscription_id)
        result = tier_service.recalculate_user_tier(user.id)
    elif status.status in INACTIVE_SUBSCRIPTION_STATUSES:
        result = tier_service.cancel_paid_subscription(user)
    else:
        # past_due and friends keep the current tier until Stripe gives up
        result = tier_service.recalculate_user_tier(user.id)
    return {"handled": "subscription_updated", "user_id": user.id, "tier": result.effective_tier}


def handle_subscription_deleted(subscription: dict) -> dict:
    user = _find_user(customer_id=subscription.get("customer"))
    if not user:
        current_app.logger.warning("Subscription %s deleted for unknown customer", subscription.get("id"))
        return {"handled": "subscription_deleted", "user_id": None}

    result = tier_service.cancel_paid_subscription(user)
    return {"handled": "subscription_deleted", "user_id": user.id, "tier": result.effective_tier}


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "checkout.session.expired": handle_checkout_expired,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def dispatch(event: dict) -> dict:
    event_type = event.get("type")
    handler = HANDLERS.get(event_type)
    if handler is None:
        current_app.logger.info("Ignoring Stripe event %s (%s)", event.get("id"), event_type)
        return {"handled": None}

    obj = (event.get("data") or {}).get("object") or {}
    current_app.logger.info("Processing Stripe event %s (%s)", event.get("id"), event_type)
    return handler(obj)
