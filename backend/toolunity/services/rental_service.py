# Overview: Service-layer operations for rentals; encapsulates business logic and database work.

"""
Rental State Machine

================================================================================
PURPOSE: Move a rental from request to completion without ever skipping a step
================================================================================

STATE MACHINE:
    pending_payment -> pending_approval -> active -> returned -> completed
                       pending_approval -> rejected
    pending_payment  -> cancelled | expired

    pending_payment:  created, renter has not paid yet
    pending_approval: paid (rental + deposit), waiting for the owner
    active:           owner accepted, tool out on rental
    returned:         tool back, deposit claim window open
    completed:        deposit settled (or there was none)
    rejected:         owner declined or approval timed out; fully refunded
    cancelled:        renter withdrew before paying
    expired:          checkout abandoned past PAYMENT_TIMEOUT_HOURS

RULES (NON-NEGOTIABLE):
1. Every rental is created in pending_payment. Only the checkout-completed
   webhook moves it to pending_approval.
2. Every transition is a guarded UPDATE on the expected status. Two racing
   owner actions on one rental: exactly one wins, the other gets
   PreconditionFailed.
3. Rejection refunds BEFORE changing status. No refund, no rejection.
4. Acceptance never waits on the owner payout: a failed transfer is recorded
   (payout_status=failed) and retried by an operator.
5. renter_id / owner_id never change and total = rental cost + deposit.
6. An unpaid rental holds the tool's dates and a borrow slot only until it
   is cancelled or expires. A payment that lands after that is refunded.
================================================================================
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from flask import current_app

from ..errors import (
    AuthorizationDenied,
    ExternalServiceFailure,
    NotFound,
    PreconditionFailed,
    ToolUnityError,
    ValidationFailed,
)
from ..extensions import db
from ..models import RentalTransaction, Tool, User
from ..models.rentals import OPEN_RENTAL_STATUSES, RENTAL_STATUSES
from ..notifications import notify, pounds
from ..time_utils import parse_iso_date, to_iso_date, today as utc_today, utcnow
from . import deposit_service, tier_service
from .concurrency import lock_for_update, transition_status


VALID_TRANSITIONS = {
    ("pending_payment", "pending_approval"),
    ("pending_payment", "cancelled"),
    ("pending_payment", "expired"),
    ("pending_approval", "active"),
    ("pending_approval", "rejected"),
    ("active", "returned"),
    ("active", "completed"),
    ("returned", "completed"),
}

AUTO_DECLINE_REASON = "The owner did not respond within {hours} hours"

# Unpaid rentals that ended without money changing hands
ABANDONED_STATUSES = ("cancelled", "expired")


def can_transition(from_status: str, to_status: str) -> bool:
    if from_status not in RENTAL_STATUSES or to_status not in RENTAL_STATUSES:
        raise ValidationFailed(f"Unknown rental status transition {from_status} -> {to_status}")
    return (from_status, to_status) in VALID_TRANSITIONS


def _gateway():
    return current_app.extensions["payments"]


def _coerce_date(value, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = parse_iso_date(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        raise ValidationFailed(f"{field} must be a date (YYYY-MM-DD)")
    return parsed


# =============================================================================
# Creation
# =============================================================================

def calculate_pricing(daily_rate_cents: int, duration_days: int, tool_value_cents: int | None) -> dict:
    """Price breakdown in pence. Owner payout is OWNER_PAYOUT_PERCENT of the rental cost."""
    payout_percent = current_app.config.get("OWNER_PAYOUT_PERCENT", 70)
    rental_cost = daily_rate_cents * duration_days
    deposit = deposit_service.calculate_deposit(tool_value_cents)
    owner_payout = (rental_cost * payout_percent + 50) // 100
    return {
        "duration_days": duration_days,
        "daily_rate_cents": daily_rate_cents,
        "rental_cost_cents": rental_cost,
        "deposit_amount_cents": deposit,
        "total_cost_cents": rental_cost + deposit,
        "owner_payout_cents": owner_payout,
        "platform_fee_cents": rental_cost - owner_payout,
    }


def _check_borrow_allowance(renter: User) -> None:
    limits = tier_service.get_tier_limits(renter.subscription_tier)
    open_borrows = tier_service.count_open_borrows(renter.id)
    if open_borrows >= limits["max_borrows"]:
        if limits["max_borrows"] == 0:
            raise AuthorizationDenied(
                "Your membership does not include borrowing. List a tool or subscribe to start renting.",
                tier=renter.subscription_tier,
            )
        raise AuthorizationDenied(
            f"Your {renter.subscription_tier} tier allows {limits['max_borrows']} active rental(s)",
            tier=renter.subscription_tier,
        )


def _check_dates(start_date: date, end_date: date, today: date) -> int:
    max_days = current_app.config.get("MAX_RENTAL_DAYS", 30)
    if start_date <= today:
        raise ValidationFailed("Start date must be in the future")
    if end_date <= start_date:
        raise ValidationFailed("End date must be after the start date")
    duration_days = (end_date - start_date).days
    if duration_days > max_days:
        raise ValidationFailed(f"Rentals cannot be longer than {max_days} days")
    return duration_days


def _check_overlap(tool_id: int, start_date: date, end_date: date) -> None:
    conflict = (
        db.session.query(RentalTransaction)
        .filter(
            RentalTransaction.tool_id == tool_id,
            RentalTransaction.status.in_(OPEN_RENTAL_STATUSES),
            RentalTransaction.start_date < end_date,
            RentalTransaction.end_date > start_date,
        )
        .first()
    )
    if conflict:
        raise PreconditionFailed(
            f"This tool is already booked from {to_iso_date(conflict.start_date)} to {to_iso_date(conflict.end_date)}",
            reason="date_conflict",
        )


def _validate_request(renter: User, tool_id: int, start_date, end_date, *, today: date | None = None, lock: bool = False):
    _check_borrow_allowance(renter)

    query = db.session.query(Tool).filter(
        Tool.id == tool_id,
        Tool.deleted_at.is_(None),
        Tool.available.is_(True),
    )
    tool = (lock_for_update(query) if lock else query).first()
    if not tool:
        raise NotFound("Tool not found or not available")
    if tool.owner_id == renter.id:
        raise AuthorizationDenied("You cannot rent a tool you own", reason="self_borrow")

    start = _coerce_date(start_date, "start_date")
    end = _coerce_date(end_date, "end_date")
    duration_days = _check_dates(start, end, today or utc_today())
    _check_overlap(tool.id, start, end)

    return tool, start, end, calculate_pricing(tool.daily_rate_cents, duration_days, tool.tool_value_cents)


def quote_rental(renter: User, tool_id: int, start_date, end_date, *, today: date | None = None) -> dict:
    """Run every creation check without writing anything and return the price breakdown."""
    tool, start, end, pricing = _validate_request(renter, tool_id, start_date, end_date, today=today)
    limits = tier_service.get_tier_limits(renter.subscription_tier)
    return {
        "tool_id": tool.id,
        "start_date": to_iso_date(start),
        "end_date": to_iso_date(end),
        **pricing,
        "within_tier_value_limit": (tool.tool_value_cents or 0) <= limits["max_value_cents"],
        "within_tier_day_limit": pricing["duration_days"] <= limits["max_days"],
    }


def create_rental(
    renter: User,
    tool_id: int,
    start_date,
    end_date,
    notes: str | None = None,
    *,
    today: date | None = None,
) -> RentalTransaction:
    tool, start, end, pricing = _validate_request(
        renter, tool_id, start_date, end_date, today=today, lock=True
    )

    rental = RentalTransaction(
        tool_id=tool.id,
        renter_id=renter.id,
        owner_id=tool.owner_id,
        start_date=start,
        end_date=end,
        notes=(notes or "").strip() or None,
        status="pending_payment",
        deposit_status="none",
        **pricing,
    )
    db.session.add(rental)
    db.session.commit()

    current_app.logger.info(
        "Rental %s created: tool %s, renter %s, %d days, total %s",
        rental.id, tool.id, renter.id, rental.duration_days, pounds(rental.total_cost_cents),
    )
    return rental


# =============================================================================
# Payment
# =============================================================================

def start_checkout(renter: User, rental_id: int) -> dict:
    """Create a Stripe checkout session for a pending_payment rental."""
    rental = _get_rental(rental_id)
    if rental.renter_id != renter.id:
        raise AuthorizationDenied("Only the renter can pay for this rental")
    if not renter.email_verified:
        raise AuthorizationDenied("Please verify your email before renting", reason="email_not_verified")
    if rental.status != "pending_payment":
        raise PreconditionFailed(f"Rental is {rental.status}, payment is no longer possible")

    gateway = _gateway()
    app_url = current_app.config.get("APP_URL", "").rstrip("/")
    tool_name = rental.tool.name if rental.tool else "Tool rental"
    line_items = [
        gateway.line_item(
            f"{tool_name} rental",
            rental.rental_cost_cents,
            f"{rental.duration_days} day(s) from {to_iso_date(rental.start_date)}",
        ),
        gateway.line_item(
            "Refundable deposit",
            rental.deposit_amount_cents,
            "Returned after the tool comes back undamaged",
        ),
    ]
    session = gateway.create_checkout(
        line_items=[item for item in line_items if item["price_data"]["unit_amount"] > 0],
        metadata={
            "type": "rental_payment",
            "rental_transaction_id": rental.id,
            "tool_id": rental.tool_id,
            "renter_id": rental.renter_id,
        },
        success_url=f"{app_url}/dashboard?rental={rental.id}&checkout=success",
        cancel_url=f"{app_url}/tools/{rental.tool_id}?checkout=cancelled",
        customer_email=renter.email,
        client_reference_id=str(rental.id),
        expires_at=utcnow() + timedelta(minutes=current_app.config.get("CHECKOUT_EXPIRY_MINUTES", 60)),
    )

    rental.stripe_checkout_session_id = session.session_id
    db.session.commit()
    return {"rental_id": rental.id, "session_id": session.session_id, "url": session.url}


def mark_payment_completed(
    rental_id: int,
    payment_intent_id: str,
    checkout_session_id: str | None = None,
) -> tuple[RentalTransaction, bool]:
    """
    Checkout completed: pending_payment -> pending_approval, deposit none -> held.

    Returns (rental, changed). Redelivered webhooks find the rental already
    moved on and are a logged no-op.
    """
    rental = _get_rental(rental_id)
    now = utcnow()
    values = {
        "status": "pending_approval",
        "stripe_payment_intent_id": payment_intent_id,
        "paid_at": now,
    }
    if checkout_session_id:
        values["stripe_checkout_session_id"] = checkout_session_id
    if rental.deposit_amount_cents > 0:
        values["deposit_status"] = "held"

    if rental.status in ABANDONED_STATUSES:
        return _refund_late_payment(rental, payment_intent_id), False

    try:
        transition_status(RentalTransaction, rental.id, values, status="pending_payment")
    except PreconditionFailed:
        db.session.refresh(rental)
        if rental.status in ABANDONED_STATUSES:
            return _refund_late_payment(rental, payment_intent_id), False
        current_app.logger.info(
            "Payment for rental %s already recorded (status %s), ignoring redelivery", rental_id, rental.status
        )
        return rental, False
    db.session.commit()

    current_app.logger.info("Rental %s paid (%s), awaiting owner approval", rental.id, payment_intent_id)
    notify(
        "rental_requested",
        rental.owner.email,
        tool_name=rental.tool.name,
        start_date=to_iso_date(rental.start_date),
        end_date=to_iso_date(rental.end_date),
        owner_payout=pounds(rental.owner_payout_cents),
        timeout_hours=current_app.config.get("APPROVAL_TIMEOUT_HOURS", 48),
        link=f"{current_app.config.get('APP_URL', '').rstrip('/')}/owner-dashboard",
    )
    return rental, True


def _refund_late_payment(rental: RentalTransaction, payment_intent_id: str | None) -> RentalTransaction:
    """A checkout completed after the rental was cancelled or expired: give the money back."""
    rental = _get_rental(rental.id, lock=True)
    if rental.refund_id or not payment_intent_id:
        current_app.logger.info("Late payment for %s rental %s already handled", rental.status, rental.id)
        return rental

    refund_id = _gateway().refund(
        payment_intent_id,
        reason="rental_no_longer_pending",
        metadata={"rental_transaction_id": rental.id},
        idempotency_key=f"rental-late-payment-{rental.id}",
    )
    rental.stripe_payment_intent_id = payment_intent_id
    rental.refund_id = refund_id
    db.session.commit()
    current_app.logger.warning(
        "Payment %s arrived for %s rental %s, refunded (%s)", payment_intent_id, rental.status, rental.id, refund_id
    )
    return rental


def _expire_checkout_session(rental: RentalTransaction) -> None:
    if not rental.stripe_checkout_session_id:
        return
    try:
        _gateway().expire_checkout(rental.stripe_checkout_session_id)
    except ExternalServiceFailure as exc:
        # A late completion is refunded by mark_payment_completed
        current_app.logger.warning(
            "Could not expire checkout %s for rental %s: %s", rental.stripe_checkout_session_id, rental.id, exc
        )


def cancel_rental(renter: User, rental_id: int) -> RentalTransaction:
    """Renter withdraws an unpaid rental, freeing the dates and the borrow slot."""
    rental = _get_rental(rental_id, lock=True)
    if rental.renter_id != renter.id:
        raise AuthorizationDenied("Only the renter can cancel this rental")
    if rental.status != "pending_payment":
        raise PreconditionFailed(f"Rental is {rental.status}, only unpaid rentals can be cancelled")

    transition_status(RentalTransaction, rental.id, {"status": "cancelled"}, status="pending_payment")
    db.session.commit()
    current_app.logger.info("Rental %s cancelled by renter %s", rental.id, renter.id)

    _expire_checkout_session(rental)
    return rental


def mark_checkout_expired(rental_id: int, checkout_session_id: str | None) -> tuple[RentalTransaction, bool]:
    """
    Stripe gave up on a checkout session.

    Only the rental's current session counts: a renter who retried checkout
    has a newer session that is still open.
    """
    rental = _get_rental(rental_id)
    if checkout_session_id and rental.stripe_checkout_session_id not in (None, checkout_session_id):
        current_app.logger.info(
            "Checkout %s expired but rental %s moved on to %s", checkout_session_id, rental.id,
            rental.stripe_checkout_session_id,
        )
        return rental, False

    try:
        transition_status(RentalTransaction, rental.id, {"status": "expired"}, status="pending_payment")
    except PreconditionFailed:
        current_app.logger.info("Checkout expiry for rental %s ignored (status %s)", rental_id, rental.status)
        return rental, False
    db.session.commit()
    current_app.logger.info("Rental %s expired, checkout %s abandoned", rental.id, checkout_session_id)
    return rental, True


def expire_stale_checkouts(*, now=None) -> dict:
    """
    Expire every rental still unpaid PAYMENT_TIMEOUT_HOURS after creation.

    Checkout sessions are opened with a shorter lifetime than this timeout,
    so Stripe has already closed them by the time the sweep runs.
    """
    now = now or utcnow()
    hours = current_app.config.get("PAYMENT_TIMEOUT_HOURS", 2)
    cutoff = now - timedelta(hours=hours)

    rental_ids = [
        row.id
        for row in db.session.query(RentalTransaction.id).filter(
            RentalTransaction.status == "pending_payment",
            RentalTransaction.created_at <= cutoff,
        )
    ]

    expired = []
    for rental_id in rental_ids:
        try:
            transition_status(RentalTransaction, rental_id, {"status": "expired"}, status="pending_payment")
        except PreconditionFailed:
            # Paid or cancelled since the query ran
            continue
        db.session.commit()
        expired.append(rental_id)

    current_app.logger.info("Checkout expiry: %d processed, %d expired", len(rental_ids), len(expired))
    return {"processed": len(rental_ids), "expired": expired}


# =============================================================================
# Owner decision
# =============================================================================

def _pay_owner(rental: RentalTransaction) -> RentalTransaction:
    """Attempt the owner payout transfer and record the outcome. Never raises for Stripe errors."""
    now = utcnow()
    rental.payout_attempted_at = now
    try:
        transfer_id = _gateway().transfer(
            rental.owner_payout_cents,
            rental.owner.stripe_connect_account_id,
            f"rental-{rental.id}",
            idempotency_key=f"rental-payout-{rental.id}",
        )
    except ExternalServiceFailure as exc:
        rental.payout_status = "failed"
        rental.payout_error = str(exc)
        db.session.commit()
        current_app.logger.warning("Owner payout failed for rental %s: %s", rental.id, exc)
        return rental

    rental.payout_status = "paid"
    rental.payout_transfer_id = transfer_id
    rental.payout_error = None
    db.session.commit()
    current_app.logger.info("Owner payout %s sent for rental %s", transfer_id, rental.id)
    return rental


def accept_rental(owner: User, rental_id: int) -> RentalTransaction:
    rental = _get_rental(rental_id, lock=True)
    if rental.owner_id != owner.id:
        raise AuthorizationDenied("Only the tool owner can accept this rental")
    if rental.status != "pending_approval":
        raise PreconditionFailed(f"Rental is already {rental.status}")
    if not owner.stripe_connect_account_id:
        raise PreconditionFailed(
            "Set up your payout account before accepting rentals", reason="payout_account_missing"
        )

    transition_status(
        RentalTransaction,
        rental.id,
        {"status": "active", "approved_at": utcnow()},
        status="pending_approval",
    )
    db.session.commit()
    current_app.logger.info("Rental %s accepted by owner %s", rental.id, owner.id)

    _pay_owner(rental)

    notify(
        "rental_accepted",
        rental.renter.email,
        tool_name=rental.tool.name,
        start_date=to_iso_date(rental.start_date),
        end_date=to_iso_date(rental.end_date),
        owner_email=owner.email,
    )
    return rental


def retry_payout(rental_id: int) -> RentalTransaction:
    """Operator retry of a failed owner payout. Same idempotency key, so never paid twice."""
    rental = _get_rental(rental_id, lock=True)
    if rental.status not in ("active", "returned", "completed") or rental.payout_status != "failed":
        raise PreconditionFailed(f"Rental {rental.id} has no failed payout to retry")
    if not rental.owner.stripe_connect_account_id:
        raise PreconditionFailed("Owner still has no payout account", reason="payout_account_missing")
    return _pay_owner(rental)


def _refund_and_reject(rental: RentalTransaction, reason: str) -> RentalTransaction:
    refund_id = None
    if rental.stripe_payment_intent_id:
        refund_id = _gateway().refund(
            rental.stripe_payment_intent_id,
            reason="rental_rejected",
            metadata={"rental_transaction_id": rental.id},
            idempotency_key=f"rental-reject-{rental.id}",
        )

    values = {
        "status": "rejected",
        "rejection_reason": reason,
        "rejected_at": utcnow(),
        "refund_id": refund_id,
    }
    # The full refund includes the deposit
    if rental.deposit_status == "held":
        values["deposit_status"] = "refunded"
    transition_status(RentalTransaction, rental.id, values, status="pending_approval")
    db.session.commit()
    return rental


def reject_rental(owner: User, rental_id: int, reason: str | None = None) -> RentalTransaction:
    rental = _get_rental(rental_id, lock=True)
    if rental.owner_id != owner.id:
        raise AuthorizationDenied("Only the tool owner can reject this rental")
    if rental.status != "pending_approval":
        raise PreconditionFailed(f"Rental is already {rental.status}")

    reason = (reason or "").strip() or "Declined by owner"
    _refund_and_reject(rental, reason)
    current_app.logger.info("Rental %s rejected by owner %s", rental.id, owner.id)

    notify(
        "rental_rejected",
        rental.renter.email,
        tool_name=rental.tool.name,
        reason=reason,
        total=pounds(rental.total_cost_cents),
    )
    return rental


def auto_decline_expired(*, now=None) -> dict:
    """
    Refund and reject every rental left in pending_approval past APPROVAL_TIMEOUT_HOURS.

    Per-rental failures are collected, the sweep carries on.
    """
    now = now or utcnow()
    hours = current_app.config.get("APPROVAL_TIMEOUT_HOURS", 48)
    cutoff = now - timedelta(hours=hours)

    rental_ids = [
        row.id
        for row in db.session.query(RentalTransaction.id).filter(
            RentalTransaction.status == "pending_approval",
            db.func.coalesce(RentalTransaction.paid_at, RentalTransaction.created_at) <= cutoff,
        )
    ]

    declined, errors = [], []
    reason = AUTO_DECLINE_REASON.format(hours=hours)
    for rental_id in rental_ids:
        try:
            rental = _get_rental(rental_id, lock=True)
            if rental.status != "pending_approval":
                continue
            _refund_and_reject(rental, reason)
        except ToolUnityError as exc:
            db.session.rollback()
            current_app.logger.warning("Auto-decline failed for rental %s: %s", rental_id, exc)
            errors.append({"rental_id": rental_id, "error": str(exc)})
            continue

        declined.append(rental_id)
        notify(
            "rental_expired",
            rental.renter.email,
            tool_name=rental.tool.name,
            total=pounds(rental.total_cost_cents),
        )

    current_app.logger.info(
        "Auto-decline: %d processed, %d declined, %d errors", len(rental_ids), len(declined), len(errors)
    )
    return {"processed": len(rental_ids), "declined": declined, "errors": errors}


# =============================================================================
# Return
# =============================================================================

def mark_returned(renter: User, rental_id: int, *, now=None) -> RentalTransaction:
    """
    Renter hands the tool back.

    With a held deposit the rental waits in returned while the claim window
    runs; without one it completes straight away.
    """
    now = now or utcnow()
    rental = _get_rental(rental_id, lock=True)
    if rental.renter_id != renter.id:
        raise AuthorizationDenied("Only the renter can mark this rental as returned")
    if rental.status != "active":
        raise PreconditionFailed(f"Rental is {rental.status}, only active rentals can be returned")

    if rental.deposit_status == "held":
        transition_status(
            RentalTransaction,
            rental.id,
            {
                "status": "returned",
                "returned_at": now,
                "deposit_status": "pending_release",
                "claim_window_ends_at": now + deposit_service.claim_window(),
            },
            status="active",
            deposit_status="held",
        )
    else:
        transition_status(
            RentalTransaction,
            rental.id,
            {"status": "completed", "returned_at": now, "completed_at": now},
            status="active",
        )
    db.session.commit()
    current_app.logger.info("Rental %s returned (%s)", rental.id, rental.status)
    return rental


# =============================================================================
# Reads
# =============================================================================

def _get_rental(rental_id: int, *, lock: bool = False) -> RentalTransaction:
    query = db.session.query(RentalTransaction).filter_by(id=rental_id)
    rental = (lock_for_update(query) if lock else query).first()
    if not rental:
        raise NotFound(f"Rental {rental_id} not found")
    return rental


def get_rental_for_user(user: User, rental_id: int) -> RentalTransaction:
    rental = _get_rental(rental_id)
    if user.id not in (rental.renter_id, rental.owner_id) and not user.is_admin:
        raise AuthorizationDenied("You are not part of this rental")
    deposit_service.check_deposit_release(rental)
    return rental


def _lazy_release(rentals: list[RentalTransaction]) -> list[RentalTransaction]:
    for rental in rentals:
        deposit_service.check_deposit_release(rental)
    return rentals


def list_owner_requests(owner: User, status: str | None = None) -> list[RentalTransaction]:
    query = db.session.query(RentalTransaction).filter(RentalTransaction.owner_id == owner.id)
    if status:
        if status not in RENTAL_STATUSES:
            raise ValidationFailed(f"Unknown rental status '{status}'")
        query = query.filter(RentalTransaction.status == status)
    else:
        query = query.filter(RentalTransaction.status.notin_(("pending_payment",) + ABANDONED_STATUSES))
    return _lazy_release(query.order_by(RentalTransaction.created_at.desc(), RentalTransaction.id.desc()).all())


def list_renter_rentals(renter: User) -> list[RentalTransaction]:
    rentals = (
        db.session.query(RentalTransaction)
        .filter(RentalTransaction.renter_id == renter.id)
        .order_by(RentalTransaction.created_at.desc(), RentalTransaction.id.desc())
        .all()
    )
    return _lazy_release(rentals)


def list_failed_payouts() -> list[RentalTransaction]:
    return (
        db.session.query(RentalTransaction)
        .filter(RentalTransaction.payout_status == "failed")
        .order_by(RentalTransaction.id)
        .all()
    )
