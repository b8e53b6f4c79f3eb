# Overview: Service-layer operations for rental deposits; encapsulates business logic and database work.

"""
Deposit Ledger

WHY: Renters pay a refundable deposit with every rental. After the tool is
returned the owner has CLAIM_WINDOW_DAYS to report damage; without a claim
the deposit goes back to the renter, with a claim an admin decides.

STATE MACHINE:
    none -> held -> pending_release -> released
                                    -> claimed -> forfeited | refunded

    held:            collected at checkout, tool out on rental
    pending_release: tool returned, claim window open
    released:        window passed without a claim, refunded to renter
    claimed:         owner reported damage, awaiting admin decision
    forfeited:       admin paid the deposit to the owner
    refunded:        admin refunded the deposit to the renter

RULES:
1. released, forfeited and refunded are terminal; nothing about the deposit
   changes afterwards.
2. Refunds to the renter are blocking: if Stripe fails, the state stays put
   and the error surfaces.
3. The transfer to the owner on forfeit is best effort: failure is recorded
   on the rental for operator follow-up, the decision still stands.
"""

from __future__ import annotations

from datetime import timedelta

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
from ..models import RentalTransaction, User
from ..models.rentals import DEPOSIT_STATUSES, TERMINAL_DEPOSIT_STATUSES
from ..notifications import notify, pounds
from ..time_utils import utcnow
from .concurrency import lock_for_update, transition_status


DEPOSIT_PERCENTAGE = 20
MIN_DEPOSIT_CENTS = 1_000
MAX_DEPOSIT_CENTS = 50_000
# Used when a tool has no assessed value
DEFAULT_DEPOSIT_CENTS = MIN_DEPOSIT_CENTS

MIN_CLAIM_REASON_LENGTH = 10
RESOLUTION_ACTIONS = ("refund", "forfeit")


def calculate_deposit(tool_value_cents: int | None) -> int:
    """20% of the tool's assessed value, clamped to £10-£500 (pence)."""
    if not tool_value_cents or tool_value_cents <= 0:
        return DEFAULT_DEPOSIT_CENTS
    deposit = (tool_value_cents * DEPOSIT_PERCENTAGE + 50) // 100
    return max(MIN_DEPOSIT_CENTS, min(deposit, MAX_DEPOSIT_CENTS))


def claim_window() -> timedelta:
    return timedelta(days=current_app.config.get("CLAIM_WINDOW_DAYS", 7))


def _get_rental_locked(rental_id: int) -> RentalTransaction:
    rental = lock_for_update(db.session.query(RentalTransaction).filter_by(id=rental_id)).first()
    if not rental:
        raise NotFound(f"Rental {rental_id} not found")
    return rental


def _ensure_deposit_status(rental: RentalTransaction, expected: str) -> None:
    if rental.deposit_is_terminal:
        raise PreconditionFailed(f"Deposit for rental {rental.id} is already {rental.deposit_status}")
    if rental.deposit_status != expected:
        raise PreconditionFailed(
            f"Deposit for rental {rental.id} is {rental.deposit_status}, expected {expected}"
        )


def _email_context(rental: RentalTransaction, **extra) -> dict:
    return {
        "tool_name": rental.tool.name if rental.tool else "your tool",
        "deposit": pounds(rental.deposit_amount_cents),
        **extra,
    }


def file_claim(owner: User, rental_id: int, reason: str, *, now=None) -> RentalTransaction:
    """
    Owner reports damage while the claim window is open.

    Moves the deposit pending_release -> claimed and holds it for admin review.
    """
    now = now or utcnow()
    reason = (reason or "").strip()

    rental = _get_rental_locked(rental_id)
    if rental.owner_id != owner.id:
        raise AuthorizationDenied("Only the tool owner can file a deposit claim")
    if len(reason) < MIN_CLAIM_REASON_LENGTH:
        raise ValidationFailed(f"Claim reason must be at least {MIN_CLAIM_REASON_LENGTH} characters")

    _ensure_deposit_status(rental, "pending_release")
    if not rental.claim_window_ends_at or now >= rental.claim_window_ends_at:
        raise PreconditionFailed("The claim window for this rental has closed")

    transition_status(
        RentalTransaction,
        rental.id,
        {
            "deposit_status": "claimed",
            "deposit_claim_reason": reason,
            "deposit_claimed_at": now,
        },
        deposit_status="pending_release",
    )
    db.session.commit()
    current_app.logger.info("Deposit claim filed on rental %s by owner %s", rental.id, owner.id)

    notify("deposit_claimed", rental.renter.email, **_email_context(rental, reason=reason))
    return rental


def release_deposit(rental_id: int, *, now=None) -> RentalTransaction:
    """
    Refund an unclaimed deposit once the claim window has passed.

    The refund happens first; a Stripe failure leaves the deposit in
    pending_release (retried by the next sweep) and is raised.
    """
    now = now or utcnow()
    rental = _get_rental_locked(rental_id)
    _ensure_deposit_status(rental, "pending_release")
    if rental.claim_window_ends_at and now < rental.claim_window_ends_at:
        raise PreconditionFailed("The claim window for this rental is still open")

    refund_id = None
    if rental.deposit_amount_cents > 0 and rental.stripe_payment_intent_id:
        gateway = current_app.extensions["payments"]
        refund_id = gateway.refund(
            rental.stripe_payment_intent_id,
            reason="deposit_release",
            amount_cents=rental.deposit_amount_cents,
            metadata={"rental_transaction_id": rental.id},
            idempotency_key=f"deposit-release-{rental.id}",
        )

    transition_status(
        RentalTransaction,
        rental.id,
        {
            "deposit_status": "released",
            "deposit_refund_id": refund_id,
            "deposit_released_at": now,
            "status": "completed",
            "completed_at": now,
        },
        deposit_status="pending_release",
    )
    db.session.commit()
    current_app.logger.info("Deposit released for rental %s (refund %s)", rental.id, refund_id)

    notify("deposit_released", rental.renter.email, **_email_context(rental))
    return rental


def release_expired_deposits(*, now=None) -> dict:
    """
    Sweep every pending_release deposit whose window has passed.

    Failures are collected per rental; one bad refund never stops the sweep.
    """
    now = now or utcnow()
    rental_ids = [
        row.id
        for row in db.session.query(RentalTransaction.id).filter(
            RentalTransaction.deposit_status == "pending_release",
            RentalTransaction.claim_window_ends_at <= now,
        )
    ]

    released, errors = [], []
    for rental_id in rental_ids:
        try:
            release_deposit(rental_id, now=now)
            released.append(rental_id)
        except ToolUnityError as exc:
            db.session.rollback()
            current_app.logger.warning("Deposit release failed for rental %s: %s", rental_id, exc)
            errors.append({"rental_id": rental_id, "error": str(exc)})

    current_app.logger.info(
        "Deposit sweep: %d processed, %d released, %d errors", len(rental_ids), len(released), len(errors)
    )
    return {"processed": len(rental_ids), "released": released, "errors": errors}


def check_deposit_release(rental: RentalTransaction, *, now=None) -> bool:
    """
    Lazily release a deposit whose window passed, called whenever a rental is read.

    Returns True when the deposit was released by this call.
    """
    now = now or utcnow()
    if rental.deposit_status != "pending_release":
        return False
    if not rental.claim_window_ends_at or now < rental.claim_window_ends_at:
        return False

    try:
        release_deposit(rental.id, now=now)
    except ToolUnityError as exc:
        db.session.rollback()
        current_app.logger.warning("Lazy deposit release failed for rental %s: %s", rental.id, exc)
        return False
    db.session.refresh(rental)
    return True


def resolve_claim(admin: User, rental_id: int, action: str, admin_notes: str | None = None) -> RentalTransaction:
    """
    Admin decision on a claimed deposit.

    refund  -> deposit returned to the renter (blocking) -> refunded
    forfeit -> deposit paid to the owner (best effort)  -> forfeited
    Either way the rental completes.
    """
    if not admin.is_admin:
        raise AuthorizationDenied("Admin access required")
    if action not in RESOLUTION_ACTIONS:
        raise ValidationFailed(f"Action must be one of: {', '.join(RESOLUTION_ACTIONS)}")

    now = utcnow()
    rental = _get_rental_locked(rental_id)
    _ensure_deposit_status(rental, "claimed")
    gateway = current_app.extensions["payments"]

    values = {
        "status": "completed",
        "completed_at": now,
        "deposit_resolved_at": now,
        "deposit_resolved_by": admin.id,
        "deposit_admin_notes": admin_notes,
    }

    if action == "refund":
        refund_id = None
        if rental.deposit_amount_cents > 0 and rental.stripe_payment_intent_id:
            refund_id = gateway.refund(
                rental.stripe_payment_intent_id,
                reason="deposit_claim_refunded",
                amount_cents=rental.deposit_amount_cents,
                metadata={"rental_transaction_id": rental.id},
                idempotency_key=f"deposit-refund-{rental.id}",
            )
        values.update({"deposit_status": "refunded", "deposit_refund_id": refund_id})
        template = "deposit_refunded"
    else:
        transfer_id, transfer_error = None, None
        destination = rental.owner.stripe_connect_account_id
        if not destination:
            transfer_error = "Owner has no payout account"
        else:
            try:
                transfer_id = gateway.transfer(
                    rental.deposit_amount_cents,
                    destination,
                    f"rental-{rental.id}",
                    idempotency_key=f"deposit-forfeit-{rental.id}",
                )
            except ExternalServiceFailure as exc:
                transfer_error = str(exc)
        if transfer_error:
            current_app.logger.warning(
                "Forfeited deposit transfer failed for rental %s: %s", rental.id, transfer_error
            )
        values.update({
            "deposit_status": "forfeited",
            "deposit_transfer_id": transfer_id,
            "deposit_transfer_error": transfer_error,
        })
        template = "deposit_forfeited"

    transition_status(RentalTransaction, rental.id, values, deposit_status="claimed")
    db.session.commit()
    current_app.logger.info(
        "Deposit claim on rental %s resolved as %s by admin %s", rental.id, values["deposit_status"], admin.id
    )

    notify(template, rental.renter.email, **_email_context(rental, admin_notes=admin_notes or ""))
    return rental


def list_deposits(status: str | None = None) -> list[RentalTransaction]:
    query = db.session.query(RentalTransaction).filter(RentalTransaction.deposit_status != "none")
    if status:
        if status not in DEPOSIT_STATUSES:
            raise ValidationFailed(f"Unknown deposit status '{status}'")
        query = query.filter(RentalTransaction.deposit_status == status)
    return query.order_by(RentalTransaction.created_at.desc(), RentalTransaction.id.desc()).all()


def deposit_summary() -> dict:
    counts = dict(
        db.session.query(RentalTransaction.deposit_status, db.func.count(RentalTransaction.id))
        .group_by(RentalTransaction.deposit_status)
        .all()
    )
    return {
        "counts": {status: counts.get(status, 0) for status in DEPOSIT_STATUSES if status != "none"},
        "awaiting_decision": counts.get("claimed", 0),
        "terminal": sum(counts.get(status, 0) for status in TERMINAL_DEPOSIT_STATUSES),
    }
