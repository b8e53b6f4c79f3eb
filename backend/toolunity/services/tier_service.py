# Overview: Service-layer operations for subscription tiers; encapsulates business logic and database work.

"""
Tier Calculator

WHY: A member's tier decides how many tools they may borrow at once. Tiers
come from two places:
- a paid Stripe subscription (provenance "payment")
- listing tools (provenance "tool_waiver"): 1+ tool earns basic,
  3+ tools earn standard

RULES:
1. Listing tools only ever upgrades. A paid standard/pro tier is never
   touched by tool counts.
2. Removing every tool reverts a waiver tier to the paid tier (if any) or
   to none. A payment tier is preserved.
3. Only subscription cancellation downgrades a paid tier.

compute_effective_tier() is pure: same inputs, same result, no I/O.
recalculate_user_tier() applies it from the source of truth (the tools
table) and must run after every tool change and subscription webhook.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func

from ..errors import NotFound, PreconditionFailed, ValidationFailed
from ..extensions import db
from ..models import RentalTransaction, Tool, User
from ..models.rentals import OPEN_RENTAL_STATUSES
from .concurrency import lock_for_update, run_with_retry


TIERS = ("none", "free", "basic", "standard", "pro")
PAID_TIERS = ("basic", "standard", "pro")
GRANTED_BY = ("none", "payment", "tool_waiver")

BASIC_TOOL_THRESHOLD = 1
STANDARD_TOOL_THRESHOLD = 3

TIER_LIMITS = {
    "none": {"max_borrows": 0, "max_value_cents": 0, "max_days": 0},
    "free": {"max_borrows": 0, "max_value_cents": 0, "max_days": 0},
    "basic": {"max_borrows": 1, "max_value_cents": 10_000, "max_days": 3},
    "standard": {"max_borrows": 2, "max_value_cents": 30_000, "max_days": 7},
    "pro": {"max_borrows": 5, "max_value_cents": 100_000, "max_days": 14},
}


@dataclass(frozen=True)
class TierResult:
    effective_tier: str
    action: str  # no_change | upgraded_to_basic_free | upgraded_to_standard_free | downgraded_no_tools | paid_subscription
    is_free_waiver: bool
    granted_by: str

    def to_dict(self) -> dict:
        return {
            "effective_tier": self.effective_tier,
            "action": self.action,
            "is_free_waiver": self.is_free_waiver,
            "granted_by": self.granted_by,
        }


def validate_tier(tier: str) -> None:
    if tier not in TIERS:
        raise ValidationFailed(f"Unknown tier '{tier}'. Must be one of: {', '.join(TIERS)}")


def _result(tier: str, action: str, granted_by: str) -> TierResult:
    return TierResult(
        effective_tier=tier,
        action=action,
        is_free_waiver=granted_by == "tool_waiver",
        granted_by=granted_by,
    )


def compute_effective_tier(
    current_tier: str,
    tool_count: int,
    *,
    granted_by: str = "none",
    paid_tier: str = "none",
) -> TierResult:
    """
    Decide the effective tier for a member owning tool_count available tools.

    Precedence: 3+ tools, then 1+ tools, then 0 tools. See module docstring.
    """
    validate_tier(current_tier)
    validate_tier(paid_tier)
    if granted_by not in GRANTED_BY:
        raise ValidationFailed(f"Unknown tier provenance '{granted_by}'")
    if tool_count is None or tool_count < 0:
        raise ValidationFailed("Tool count cannot be negative")

    if tool_count >= STANDARD_TOOL_THRESHOLD:
        if current_tier in ("standard", "pro"):
            return _result(current_tier, "no_change", granted_by)
        return _result("standard", "upgraded_to_standard_free", "tool_waiver")

    if tool_count >= BASIC_TOOL_THRESHOLD:
        if current_tier in ("none", "free"):
            return _result("basic", "upgraded_to_basic_free", "tool_waiver")
        return _result(current_tier, "no_change", granted_by)

    # No tools listed
    if granted_by == "tool_waiver":
        if paid_tier in PAID_TIERS:
            return _result(paid_tier, "paid_subscription", "payment")
        return _result("none", "downgraded_no_tools", "none")

    if granted_by == "payment" or current_tier in PAID_TIERS:
        return _result(current_tier, "paid_subscription", "payment")

    return _result(current_tier, "no_change", granted_by)


def get_tier_limits(tier: str) -> dict:
    validate_tier(tier)
    return dict(TIER_LIMITS[tier])


def count_available_tools(user_id: int) -> int:
    """Available, non-deleted tools owned by user_id (source of truth)."""
    return (
        db.session.query(func.count(Tool.id))
        .filter(
            Tool.owner_id == user_id,
            Tool.available.is_(True),
            Tool.deleted_at.is_(None),
        )
        .scalar()
        or 0
    )


def count_open_borrows(user_id: int) -> int:
    return (
        db.session.query(func.count(RentalTransaction.id))
        .filter(
            RentalTransaction.renter_id == user_id,
            RentalTransaction.status.in_(OPEN_RENTAL_STATUSES),
        )
        .scalar()
        or 0
    )


def _get_user_locked(user_id: int) -> User:
    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


def recalculate_user_tier(user_id: int) -> TierResult:
    """
    Recompute and persist a member's tier from their current tool count.

    Writes tier, provenance and the refreshed tools_count in one commit.
    """
    def _op():
        user = _get_user_locked(user_id)
        previous = user.subscription_tier
        tool_count = count_available_tools(user_id)
        result = compute_effective_tier(
            user.subscription_tier,
            tool_count,
            granted_by=user.tier_granted_by,
            paid_tier=user.paid_tier,
        )
        user.subscription_tier = result.effective_tier
        user.tier_granted_by = result.granted_by
        user.tools_count = tool_count
        db.session.commit()

        if result.action != "no_change":
            current_app.logger.info(
                "Tier for user %s: %s -> %s (%s, %d tools)",
                user_id, previous, result.effective_tier, result.action, tool_count,
            )
        return result

    return run_with_retry(_op)


def apply_paid_subscription(
    user: User,
    tier: str,
    customer_id: str | None = None,
    subscription_id: str | None = None,
) -> TierResult:
    """
    Record an active paid subscription.

    The paid tier becomes effective unless the member already holds a higher
    tier through tool listings (standard waiver beats a basic subscription).
    """
    if tier not in PAID_TIERS:
        raise ValidationFailed(f"'{tier}' is not a paid tier")

    user.paid_tier = tier
    if customer_id:
        user.stripe_customer_id = customer_id
    if subscription_id:
        user.stripe_subscription_id = subscription_id

    if user.is_free_waiver and PAID_TIERS.index(user.subscription_tier) > PAID_TIERS.index(tier):
        action = "no_change"
    else:
        user.subscription_tier = tier
        user.tier_granted_by = "payment"
        action = "paid_subscription"

    db.session.commit()
    current_app.logger.info("Paid subscription '%s' applied to user %s", tier, user.id)

    return _result(user.subscription_tier, action, user.tier_granted_by)


def cancel_paid_subscription(user: User) -> TierResult:
    """
    Drop the paid tier. The only path that downgrades a payment tier.

    Tool waivers still apply afterwards, so a member with listed tools lands
    on their waiver tier rather than none.
    """
    previous = user.subscription_tier
    user.paid_tier = "none"
    user.stripe_subscription_id = None
    if user.tier_granted_by == "payment":
        user.subscription_tier = "none"
        user.tier_granted_by = "none"
    db.session.commit()

    current_app.logger.info("Paid subscription cancelled for user %s (was %s)", user.id, previous)
    return recalculate_user_tier(user.id)


def sync_subscription(user: User) -> TierResult:
    """Pull the member's subscription from Stripe and apply it."""
    if not user.stripe_customer_id:
        return recalculate_user_tier(user.id)

    gateway = current_app.extensions["payments"]
    status = gateway.retrieve_subscription_status(user.stripe_customer_id)

    if status.is_active and status.tier in PAID_TIERS:
        apply_paid_subscription(user, status.tier, subscription_id=status.subscription_id)
        return recalculate_user_tier(user.id)

    if user.paid_tier != "none":
        return cancel_paid_subscription(user)
    return recalculate_user_tier(user.id)


def get_tier_status(user: User) -> dict:
    limits = get_tier_limits(user.subscription_tier)
    open_borrows = count_open_borrows(user.id)
    tool_count = count_available_tools(user.id)
    return {
        "tier": user.subscription_tier,
        "granted_by": user.tier_granted_by,
        "is_free_waiver": user.is_free_waiver,
        "paid_tier": user.paid_tier,
        "tools_count": tool_count,
        "limits": limits,
        "active_borrows": open_borrows,
        "can_borrow": open_borrows < limits["max_borrows"],
        "tools_needed_for_basic": max(0, BASIC_TOOL_THRESHOLD - tool_count),
        "tools_needed_for_standard": max(0, STANDARD_TOOL_THRESHOLD - tool_count),
    }


def start_subscription_checkout(user: User, tier: str) -> dict:
    """Stripe checkout in subscription mode for a paid tier."""
    if tier not in PAID_TIERS:
        raise ValidationFailed(f"Tier must be one of: {', '.join(PAID_TIERS)}")
    if user.paid_tier == tier:
        raise PreconditionFailed(f"You are already subscribed to {tier}")

    gateway = current_app.extensions["payments"]
    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    session = gateway.create_checkout(
        mode="subscription",
        line_items=[{"price": gateway.price_for_tier(tier), "quantity": 1}],
        metadata={"type": "subscription", "user_id": user.id, "tier": tier},
        success_url=f"{app_url}/dashboard?subscription=success",
        cancel_url=f"{app_url}/pricing?subscription=cancelled",
        customer_email=user.email,
        client_reference_id=str(user.id),
    )
    return {"session_id": session.session_id, "url": session.url}


def create_billing_portal(user: User) -> dict:
    """Stripe billing portal for a member who has subscribed at least once."""
    if not user.stripe_customer_id:
        raise NotFound("No subscription found")
    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    url = current_app.extensions["payments"].create_portal_session(user.stripe_customer_id, f"{app_url}/profile")
    return {"url": url}
