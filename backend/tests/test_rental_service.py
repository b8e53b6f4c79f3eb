from datetime import date, datetime, timedelta

import pytest

from toolunity.errors import (
    AuthorizationDenied,
    ExternalServiceFailure,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from toolunity.extensions import db
from toolunity.models import RentalTransaction
from toolunity.services import rental_service
from toolunity.time_utils import utcnow

from conftest import END, START


# =============================================================================
# Creation
# =============================================================================

def test_create_rental_prices_and_enters_pending_payment(renter, tool, payments):
    rental = rental_service.create_rental(renter, tool.id, START, END, notes="  evening pickup ")

    assert rental.status == "pending_payment"
    assert rental.deposit_status == "none"
    assert rental.duration_days == 4
    assert rental.rental_cost_cents == 2_000
    assert rental.deposit_amount_cents == 2_000
    assert rental.total_cost_cents == rental.rental_cost_cents + rental.deposit_amount_cents
    assert rental.owner_payout_cents == 1_400
    assert rental.platform_fee_cents == 600
    assert rental.notes == "evening pickup"


def test_create_rental_accepts_iso_strings_and_nineteen_days(renter, tool):
    rental = rental_service.create_rental(renter, tool.id, "2099-01-01", "2099-01-20")

    assert rental.duration_days == 19


def test_create_rental_rejects_more_than_thirty_days(renter, tool):
    with pytest.raises(ValidationFailed):
        rental_service.create_rental(renter, tool.id, "2099-01-01", "2099-02-05")
    assert db.session.query(RentalTransaction).count() == 0


@pytest.mark.parametrize("start,end", [
    (date(2099, 1, 5), date(2099, 1, 5)),
    (date(2099, 1, 5), date(2099, 1, 1)),
])
def test_create_rental_requires_end_after_start(renter, tool, start, end):
    with pytest.raises(ValidationFailed):
        rental_service.create_rental(renter, tool.id, start, end)


def test_create_rental_requires_future_start(renter, tool):
    today = date(2099, 1, 1)
    with pytest.raises(ValidationFailed):
        rental_service.create_rental(renter, tool.id, today, today + timedelta(days=2), today=today)


def test_create_rental_rejects_bad_date_strings(renter, tool):
    with pytest.raises(ValidationFailed):
        rental_service.create_rental(renter, tool.id, "next tuesday", "2099-01-05")


def test_create_rental_accepts_datetimes(renter, tool):
    rental = rental_service.create_rental(renter, tool.id, datetime(2099, 1, 1, 9, 30), datetime(2099, 1, 5, 18, 0))

    assert rental.start_date == START
    assert rental.end_date == END
    assert rental.duration_days == 4


def test_cannot_rent_own_tool(owner, tool):
    owner.subscription_tier = "pro"
    owner.tier_granted_by = "payment"
    db.session.commit()

    with pytest.raises(AuthorizationDenied):
        rental_service.create_rental(owner, tool.id, START, END)


def test_none_tier_cannot_borrow(make_user, tool):
    member = make_user(tier="none")

    with pytest.raises(AuthorizationDenied):
        rental_service.create_rental(member, tool.id, START, END)


def test_borrow_limit_counts_open_rentals(make_user, owner, make_tool):
    member = make_user(tier="basic", granted_by="payment", paid_tier="basic")
    first = make_tool(owner, name="Drill")
    second = make_tool(owner, name="Saw")

    rental_service.create_rental(member, first.id, START, END)
    with pytest.raises(AuthorizationDenied):
        rental_service.create_rental(member, second.id, START, END)


def test_unavailable_or_missing_tool_not_found(renter, owner, make_tool):
    hidden = make_tool(owner, available=False)

    with pytest.raises(NotFound):
        rental_service.create_rental(renter, hidden.id, START, END)
    with pytest.raises(NotFound):
        rental_service.create_rental(renter, 99999, START, END)


def test_overlapping_dates_conflict(renter, make_user, tool):
    other = make_user(tier="pro", granted_by="payment", paid_tier="pro")
    rental_service.create_rental(renter, tool.id, START, END)

    with pytest.raises(PreconditionFailed):
        rental_service.create_rental(other, tool.id, date(2099, 1, 3), date(2099, 1, 8))

    # Back-to-back is fine
    rental = rental_service.create_rental(other, tool.id, END, date(2099, 1, 8))
    assert rental.status == "pending_payment"


def test_quote_writes_nothing(renter, tool):
    quote = rental_service.quote_rental(renter, tool.id, START, END)

    assert quote["total_cost_cents"] == 4_000
    assert quote["deposit_amount_cents"] == 2_000
    assert db.session.query(RentalTransaction).count() == 0


def test_parties_are_immutable(renter, tool, make_user):
    rental = rental_service.create_rental(renter, tool.id, START, END)
    other = make_user()

    with pytest.raises(ValueError):
        rental.renter_id = other.id
    with pytest.raises(ValueError):
        rental.owner_id = other.id


# =============================================================================
# Payment
# =============================================================================

def test_start_checkout_sends_rental_and_deposit_line_items(renter, tool, payments):
    rental = rental_service.create_rental(renter, tool.id, START, END)

    checkout = rental_service.start_checkout(renter, rental.id)

    assert checkout["url"].startswith("https://checkout.stripe.test/")
    call = payments.checkouts[0]
    assert [item["price_data"]["unit_amount"] for item in call["line_items"]] == [2_000, 2_000]
    assert call["metadata"]["type"] == "rental_payment"
    assert call["metadata"]["rental_transaction_id"] == rental.id
    assert db.session.get(RentalTransaction, rental.id).stripe_checkout_session_id == checkout["session_id"]


def test_start_checkout_requires_verified_email(make_user, tool, payments):
    member = make_user(tier="pro", granted_by="payment", verified=False)
    rental = rental_service.create_rental(member, tool.id, START, END)

    with pytest.raises(AuthorizationDenied):
        rental_service.start_checkout(member, rental.id)
    assert payments.checkouts == []


def test_payment_completion_is_idempotent(renter, tool, owner, payments, mailer):
    rental = rental_service.create_rental(renter, tool.id, START, END)

    _, changed = rental_service.mark_payment_completed(rental.id, "pi_1")
    _, changed_again = rental_service.mark_payment_completed(rental.id, "pi_1")

    rental = db.session.get(RentalTransaction, rental.id)
    assert changed is True
    assert changed_again is False
    assert rental.status == "pending_approval"
    assert rental.deposit_status == "held"
    assert mailer.templates_to(owner.email) == ["rental_requested"]


def test_checkout_session_expires_before_payment_timeout(renter, tool, payments):
    rental = rental_service.create_rental(renter, tool.id, START, END)

    rental_service.start_checkout(renter, rental.id)

    expires_at = payments.checkouts[0]["expires_at"]
    assert utcnow() + timedelta(minutes=59) < expires_at <= utcnow() + timedelta(minutes=61)


# =============================================================================
# Unpaid rentals
# =============================================================================

@pytest.fixture
def basic_member(make_user):
    return make_user("basic_member", tier="basic", granted_by="payment", paid_tier="basic")


def test_cancel_frees_dates_and_borrow_slot(basic_member, renter, owner, tool, make_tool, payments):
    rental = rental_service.create_rental(basic_member, tool.id, START, END)
    rental_service.start_checkout(basic_member, rental.id)

    rental_service.cancel_rental(basic_member, rental.id)

    assert db.session.get(RentalTransaction, rental.id).status == "cancelled"
    assert payments.expired_checkouts == ["cs_test_1"]
    assert rental_service.create_rental(renter, tool.id, date(2099, 1, 2), date(2099, 1, 3)).status == "pending_payment"
    other_tool = make_tool(owner, name="Sander")
    assert rental_service.create_rental(basic_member, other_tool.id, START, END).status == "pending_payment"


def test_cancel_rules(paid_rental, renter, owner, tool, make_user, payments):
    unpaid = rental_service.create_rental(make_user(tier="pro", granted_by="payment"), tool.id, END, date(2099, 1, 8))

    with pytest.raises(AuthorizationDenied):
        rental_service.cancel_rental(owner, unpaid.id)
    with pytest.raises(PreconditionFailed):
        rental_service.cancel_rental(renter, paid_rental.id)
    assert db.session.get(RentalTransaction, paid_rental.id).status == "pending_approval"


def test_cancel_stands_when_checkout_cannot_be_closed(renter, tool, payments):
    rental = rental_service.create_rental(renter, tool.id, START, END)
    rental_service.start_checkout(renter, rental.id)
    payments.fail_expire = True

    rental_service.cancel_rental(renter, rental.id)

    assert db.session.get(RentalTransaction, rental.id).status == "cancelled"


def test_stale_unpaid_rental_expires_and_releases_tool(basic_member, renter, owner, tool, make_tool, payments):
    abandoned = rental_service.create_rental(basic_member, tool.id, START, END)
    abandoned.created_at = utcnow() - timedelta(hours=3)
    db.session.commit()

    result = rental_service.expire_stale_checkouts()

    assert result == {"processed": 1, "expired": [abandoned.id]}
    assert db.session.get(RentalTransaction, abandoned.id).status == "expired"
    assert rental_service.create_rental(renter, tool.id, date(2099, 1, 2), date(2099, 1, 3)).status == "pending_payment"
    other_tool = make_tool(owner, name="Ladder")
    assert rental_service.create_rental(basic_member, other_tool.id, START, END).status == "pending_payment"


def test_expiry_sweep_ignores_recent_and_paid_rentals(paid_rental, renter, owner, make_tool):
    rental_service.create_rental(renter, make_tool(owner, name="Ladder").id, START, END)
    paid = db.session.get(RentalTransaction, paid_rental.id)
    paid.created_at = utcnow() - timedelta(hours=5)
    db.session.commit()

    assert rental_service.expire_stale_checkouts() == {"processed": 0, "expired": []}


def test_payment_after_cancel_is_refunded(renter, tool, owner, payments, mailer):
    rental = rental_service.create_rental(renter, tool.id, START, END)
    rental_service.cancel_rental(renter, rental.id)

    _, changed = rental_service.mark_payment_completed(rental.id, "pi_late")
    _, changed_again = rental_service.mark_payment_completed(rental.id, "pi_late")

    rental = db.session.get(RentalTransaction, rental.id)
    assert (changed, changed_again) == (False, False)
    assert rental.status == "cancelled"
    assert rental.refund_id == "re_test_1"
    assert payments.refunds == [{
        "payment_reference": "pi_late",
        "reason": "rental_no_longer_pending",
        "amount_cents": None,
        "idempotency_key": f"rental-late-payment-{rental.id}",
    }]
    assert mailer.templates_to(owner.email) == []


def test_checkout_expiry_only_closes_current_session(renter, tool, payments):
    rental = rental_service.create_rental(renter, tool.id, START, END)
    rental_service.start_checkout(renter, rental.id)
    rental_service.start_checkout(renter, rental.id)

    _, stale = rental_service.mark_checkout_expired(rental.id, "cs_test_1")
    assert stale is False
    assert db.session.get(RentalTransaction, rental.id).status == "pending_payment"

    _, changed = rental_service.mark_checkout_expired(rental.id, "cs_test_2")
    assert changed is True
    assert db.session.get(RentalTransaction, rental.id).status == "expired"


# =============================================================================
# Owner decision
# =============================================================================

def test_accept_activates_and_pays_owner(paid_rental, owner, renter, payments, mailer):
    rental = rental_service.accept_rental(owner, paid_rental.id)

    assert rental.status == "active"
    assert rental.approved_at is not None
    assert rental.payout_status == "paid"
    assert payments.transfers == [{
        "amount_cents": 1_400,
        "destination": "acct_owner",
        "source_reference": f"rental-{rental.id}",
        "idempotency_key": f"rental-payout-{rental.id}",
    }]
    assert "rental_accepted" in mailer.templates_to(renter.email)


def test_accept_without_payout_account_leaves_rental_pending(make_user, renter, make_tool, payments, mailer):
    owner = make_user("nopayout")
    tool = make_tool(owner)
    rental = rental_service.create_rental(renter, tool.id, START, END)
    rental_service.mark_payment_completed(rental.id, "pi_nopayout")

    with pytest.raises(PreconditionFailed):
        rental_service.accept_rental(owner, rental.id)

    assert db.session.get(RentalTransaction, rental.id).status == "pending_approval"
    assert payments.transfers == []


def test_accept_survives_transfer_failure(paid_rental, owner, payments, mailer):
    payments.fail_transfer = True

    rental = rental_service.accept_rental(owner, paid_rental.id)

    assert rental.status == "active"
    assert rental.payout_status == "failed"
    assert "insufficient_funds" in rental.payout_error

    payments.fail_transfer = False
    retried = rental_service.retry_payout(rental.id)
    assert retried.payout_status == "paid"
    assert retried.payout_error is None


def test_only_owner_can_accept(paid_rental, renter, payments):
    with pytest.raises(AuthorizationDenied):
        rental_service.accept_rental(renter, paid_rental.id)


def test_second_decision_on_same_rental_fails(paid_rental, owner, payments, mailer):
    rental_service.accept_rental(owner, paid_rental.id)

    with pytest.raises(PreconditionFailed):
        rental_service.reject_rental(owner, paid_rental.id, "Changed my mind")
    assert payments.refunds == []


def test_reject_refunds_before_status_change(paid_rental, owner, renter, payments, mailer):
    rental = rental_service.reject_rental(owner, paid_rental.id, "Tool is broken")

    assert rental.status == "rejected"
    assert rental.rejection_reason == "Tool is broken"
    assert rental.refund_id == "re_test_1"
    assert rental.deposit_status == "refunded"
    assert payments.refunds[0]["payment_reference"] == "pi_test_1"
    assert payments.refunds[0]["amount_cents"] is None
    assert "rental_rejected" in mailer.templates_to(renter.email)


def test_reject_refund_failure_leaves_rental_untouched(paid_rental, owner, payments):
    payments.fail_refund = True

    with pytest.raises(ExternalServiceFailure):
        rental_service.reject_rental(owner, paid_rental.id, "Tool is broken")

    rental = db.session.get(RentalTransaction, paid_rental.id)
    assert rental.status == "pending_approval"
    assert rental.deposit_status == "held"


def test_reject_active_rental_fails_without_refund(active_rental, owner, payments):
    with pytest.raises(PreconditionFailed):
        rental_service.reject_rental(owner, active_rental.id, "Too late")

    assert payments.refunds == []
    assert db.session.get(RentalTransaction, active_rental.id).status == "active"


def test_auto_decline_expired_requests(paid_rental, renter, payments, mailer):
    rental = db.session.get(RentalTransaction, paid_rental.id)
    rental.paid_at = utcnow() - timedelta(hours=49)
    db.session.commit()

    result = rental_service.auto_decline_expired()

    assert result == {"processed": 1, "declined": [paid_rental.id], "errors": []}
    rental = db.session.get(RentalTransaction, paid_rental.id)
    assert rental.status == "rejected"
    assert "48 hours" in rental.rejection_reason
    assert "rental_expired" in mailer.templates_to(renter.email)


def test_auto_decline_collects_failures(paid_rental, payments, mailer):
    rental = db.session.get(RentalTransaction, paid_rental.id)
    rental.paid_at = utcnow() - timedelta(hours=49)
    db.session.commit()
    payments.fail_refund = True

    result = rental_service.auto_decline_expired()

    assert result["declined"] == []
    assert result["errors"][0]["rental_id"] == paid_rental.id
    assert db.session.get(RentalTransaction, paid_rental.id).status == "pending_approval"


def test_auto_decline_ignores_fresh_requests(paid_rental, payments):
    result = rental_service.auto_decline_expired()

    assert result["processed"] == 0


# =============================================================================
# Return
# =============================================================================

def test_return_with_deposit_opens_claim_window(active_rental, renter):
    now = utcnow()
    rental = rental_service.mark_returned(renter, active_rental.id, now=now)

    assert rental.status == "returned"
    assert rental.deposit_status == "pending_release"
    assert rental.claim_window_ends_at == now + timedelta(days=7)


def test_return_without_deposit_completes(active_rental, renter):
    rental = db.session.get(RentalTransaction, active_rental.id)
    rental.deposit_status = "none"
    db.session.commit()

    rental = rental_service.mark_returned(renter, active_rental.id)

    assert rental.status == "completed"
    assert rental.completed_at is not None


def test_only_renter_can_return(active_rental, owner):
    with pytest.raises(AuthorizationDenied):
        rental_service.mark_returned(owner, active_rental.id)


def test_cannot_return_pending_rental(paid_rental, renter):
    with pytest.raises(PreconditionFailed):
        rental_service.mark_returned(renter, paid_rental.id)


def test_status_edges():
    assert rental_service.can_transition("pending_payment", "pending_approval")
    assert rental_service.can_transition("pending_approval", "rejected")
    assert not rental_service.can_transition("active", "rejected")
    assert not rental_service.can_transition("pending_payment", "active")
    assert not rental_service.can_transition("completed", "active")
    assert rental_service.can_transition("pending_payment", "cancelled")
    assert rental_service.can_transition("pending_payment", "expired")
    assert not rental_service.can_transition("pending_approval", "cancelled")
    assert not rental_service.can_transition("expired", "pending_approval")


# =============================================================================
# Reads
# =============================================================================

def test_rental_visible_to_parties_only(paid_rental, renter, owner, make_user, admin):
    assert rental_service.get_rental_for_user(renter, paid_rental.id).id == paid_rental.id
    assert rental_service.get_rental_for_user(owner, paid_rental.id).id == paid_rental.id
    assert rental_service.get_rental_for_user(admin, paid_rental.id).id == paid_rental.id

    with pytest.raises(AuthorizationDenied):
        rental_service.get_rental_for_user(make_user(), paid_rental.id)


def test_owner_requests_hide_unpaid(renter, owner, tool, make_tool, payments, mailer):
    rental_service.create_rental(renter, tool.id, START, END)
    paid = rental_service.create_rental(renter, make_tool(owner, name="Saw").id, START, END)
    rental_service.mark_payment_completed(paid.id, "pi_saw")

    requests = rental_service.list_owner_requests(owner)

    assert [r.id for r in requests] == [paid.id]
