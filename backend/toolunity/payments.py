# Overview: Stripe-backed payment collaborator (checkout, refunds, transfers, subscriptions, webhooks).

"""
Payment Gateway

WHY: Every money movement in the marketplace goes through Stripe. Services
never import stripe directly; they call this gateway so that:
- Stripe errors surface uniformly as ExternalServiceFailure
- amounts are always integer minor units (pence)
- idempotency keys are passed on every refund/transfer
- tests can swap the collaborator without touching the stripe module

The gateway is a Flask-style extension: instantiate once in extensions.py,
bind with init_app(app).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe

from .errors import ExternalServiceFailure, ValidationFailed


PAID_SUBSCRIPTION_STATUSES = {"active", "trialing"}


def _field(obj, key: str):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class ConnectAccountStatus:
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool


@dataclass
class SubscriptionStatus:
    status: str  # "none" when the customer has no subscription at all
    tier: str
    subscription_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in PAID_SUBSCRIPTION_STATUSES


class PaymentGateway:
    def __init__(self, app=None):
        self.currency = "gbp"
        self.connect_country = "GB"
        self.webhook_secret = ""
        self.allow_unsigned_webhooks = False
        self.price_tiers: dict[str, str] = {}
        self.tier_prices: dict[str, str] = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        stripe.api_key = app.config.get("STRIPE_SECRET_KEY") or None
        self.currency = app.config.get("STRIPE_CURRENCY", "gbp")
        self.connect_country = app.config.get("STRIPE_CONNECT_COUNTRY", "GB")
        self.webhook_secret = app.config.get("STRIPE_WEBHOOK_SECRET", "")
        self.allow_unsigned_webhooks = bool(app.config.get("ALLOW_UNSIGNED_WEBHOOKS"))
        self.tier_prices = {
            "basic": app.config.get("STRIPE_PRICE_BASIC", ""),
            "standard": app.config.get("STRIPE_PRICE_STANDARD", ""),
            "pro": app.config.get("STRIPE_PRICE_PRO", ""),
        }
        self.price_tiers = {price: tier for tier, price in self.tier_prices.items() if price}
        app.extensions["payments"] = self

    # -------------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------------

    def tier_for_price(self, price_id: str | None) -> str:
        """Map a Stripe price id to a subscription tier ('none' when unknown)."""
        if not price_id:
            return "none"
        return self.price_tiers.get(price_id, "none")

    def price_for_tier(self, tier: str) -> str:
        price = self.tier_prices.get(tier)
        if not price:
            raise ValidationFailed(f"No price configured for tier '{tier}'")
        return price

    def line_item(self, name: str, amount_cents: int, description: str | None = None) -> dict:
        product_data = {"name": name}
        if description:
            product_data["description"] = description
        return {
            "price_data": {
                "currency": self.currency,
                "unit_amount": int(amount_cents),
                "product_data": product_data,
            },
            "quantity": 1,
        }

    # -------------------------------------------------------------------------
    # Money movement
    # -------------------------------------------------------------------------

    def create_checkout(
        self,
        *,
        line_items: list[dict],
        metadata: dict,
        success_url: str,
        cancel_url: str,
        mode: str = "payment",
        customer_email: str | None = None,
        client_reference_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> CheckoutSession:
        params = {
            "mode": mode,
            "line_items": line_items,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if expires_at:
            # Stripe wants epoch seconds; our datetimes are naive UTC
            params["expires_at"] = int(expires_at.replace(tzinfo=timezone.utc).timestamp())
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Checkout creation failed: {exc}", service="stripe") from exc
        return CheckoutSession(session_id=session.id, url=session.url)

    def expire_checkout(self, session_id: str) -> None:
        """Close an open checkout session so it can no longer be paid."""
        try:
            stripe.checkout.Session.expire(session_id)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Checkout expiry failed: {exc}", service="stripe") from exc

    def refund(
        self,
        payment_reference: str,
        *,
        reason: str,
        amount_cents: int | None = None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """
        Refund a payment intent, fully or partially (amount_cents).

        Returns the Stripe refund id.
        """
        params = {
            "payment_intent": payment_reference,
            "reason": "requested_by_customer",
            "metadata": {"reason": reason, **{k: str(v) for k, v in (metadata or {}).items()}},
        }
        if amount_cents is not None:
            params["amount"] = int(amount_cents)
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Refund failed: {exc}", service="stripe") from exc
        return refund.id

    def transfer(
        self,
        amount_cents: int,
        destination_account: str,
        source_reference: str,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """Pay amount_cents out to a connected account. Returns the transfer id."""
        try:
            transfer = stripe.Transfer.create(
                amount=int(amount_cents),
                currency=self.currency,
                destination=destination_account,
                transfer_group=source_reference,
                metadata={"source_reference": source_reference},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Transfer failed: {exc}", service="stripe") from exc
        return transfer.id

    # -------------------------------------------------------------------------
    # Connect (owner payout accounts)
    # -------------------------------------------------------------------------

    def create_connect_account(self, email: str) -> str:
        """Express account able to receive transfers. Returns the acct_ id."""
        try:
            account = stripe.Account.create(
                type="express",
                country=self.connect_country,
                email=email,
                capabilities={"transfers": {"requested": True}},
            )
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Connect account creation failed: {exc}", service="stripe") from exc
        return account.id

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Onboarding link failed: {exc}", service="stripe") from exc
        return link.url

    def retrieve_account_status(self, account_id: str) -> ConnectAccountStatus:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Connect account lookup failed: {exc}", service="stripe") from exc
        return ConnectAccountStatus(
            details_submitted=bool(_field(account, "details_submitted")),
            charges_enabled=bool(_field(account, "charges_enabled")),
            payouts_enabled=bool(_field(account, "payouts_enabled")),
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Stripe billing portal where members manage or cancel their subscription."""
        try:
            portal = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Billing portal failed: {exc}", service="stripe") from exc
        return portal.url

    def retrieve_subscription_status(self, customer_id: str) -> SubscriptionStatus:
        """Most recent subscription of a customer, reduced to (status, tier)."""
        try:
            subscriptions = stripe.Subscription.list(customer=customer_id, status="all", limit=1)
        except stripe.StripeError as exc:
            raise ExternalServiceFailure(f"Subscription lookup failed: {exc}", service="stripe") from exc

        if not subscriptions.data:
            return SubscriptionStatus(status="none", tier="none")

        sub = subscriptions.data[0]
        return self.subscription_status_from_object(sub)

    def subscription_status_from_object(self, sub) -> SubscriptionStatus:
        """Works on webhook dicts and on Stripe API objects alike."""
        items = _field(sub, "items") or {}
        data = _field(items, "data") or []
        price_id = _field(_field(data[0], "price") or {}, "id") if data else None
        return SubscriptionStatus(
            status=_field(sub, "status") or "none",
            tier=self.tier_for_price(price_id),
            subscription_id=_field(sub, "id"),
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify a webhook signature and return the event.

        Unsigned events are only accepted when ALLOW_UNSIGNED_WEBHOOKS is on
        and no webhook secret is configured (Stripe CLI in development).
        """
        if not self.webhook_secret:
            if self.allow_unsigned_webhooks:
                try:
                    return json.loads(payload)
                except ValueError as exc:
                    raise ValidationFailed("Invalid webhook payload") from exc
            raise ExternalServiceFailure("Webhook secret not configured", service="stripe")

        if not signature:
            raise ValidationFailed("Missing webhook signature")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise ValidationFailed("Invalid webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise ValidationFailed("Webhook signature verification failed") from exc
        # Verified; hand plain dicts to the handlers
        return json.loads(payload)
