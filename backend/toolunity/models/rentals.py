from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


RENTAL_STATUSES = (
    "pending_payment",
    "pending_approval",
    "active",
    "returned",
    "completed",
    "rejected",
    "cancelled",
    "expired",
)

# Statuses that reserve the tool's dates and count against the renter's borrow limit
OPEN_RENTAL_STATUSES = ("pending_payment", "pending_approval", "active")

DEPOSIT_STATUSES = (
    "none",
    "held",
    "pending_release",
    "released",
    "claimed",
    "forfeited",
    "refunded",
)

TERMINAL_DEPOSIT_STATUSES = ("released", "forfeited", "refunded")


class RentalTransaction(db.Model):
    """
    One borrow of one tool, from request to completion, with its deposit.

    Lifecycle:
        pending_payment -> pending_approval -> active -> returned -> completed
        pending_approval -> rejected
        pending_payment -> cancelled (renter) | expired (checkout abandoned)

    Deposit:
        none -> held -> pending_release -> released
                                        -> claimed -> forfeited | refunded

    INVARIANTS:
    - renter_id and owner_id never change after creation
    - total_cost_cents == rental_cost_cents + deposit_amount_cents
    - status changes only through services.concurrency.transition_status
    """
    __tablename__ = "rental_transactions"
    __table_args__ = (
        db.CheckConstraint(
            "total_cost_cents = rental_cost_cents + deposit_amount_cents",
            name="ck_rental_total_cost",
        ),
        db.CheckConstraint("renter_id <> owner_id", name="ck_rental_not_self"),
        db.CheckConstraint("end_date > start_date", name="ck_rental_dates"),
        db.Index("ix_rental_tool_status", "tool_id", "status"),
        db.Index("ix_rental_renter_status", "renter_id", "status"),
        db.Index("ix_rental_owner_status", "owner_id", "status"),
        db.Index("ix_rental_deposit_status", "deposit_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tool_id = db.Column(db.Integer, db.ForeignKey("tools.id"), nullable=False)
    renter_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    # Money (pence), snapshotted at creation
    daily_rate_cents = db.Column(db.Integer, nullable=False)
    rental_cost_cents = db.Column(db.Integer, nullable=False)
    deposit_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False)
    platform_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    owner_payout_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(32), nullable=False, default="pending_payment")

    # Payment
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, unique=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    # Owner decision
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    refund_id = db.Column(db.String(255), nullable=True)

    # Owner payout (none | paid | failed)
    payout_status = db.Column(db.String(16), nullable=False, default="none")
    payout_transfer_id = db.Column(db.String(255), nullable=True)
    payout_error = db.Column(db.Text, nullable=True)
    payout_attempted_at = db.Column(db.DateTime, nullable=True)

    returned_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    # Deposit ledger
    deposit_status = db.Column(db.String(16), nullable=False, default="none")
    claim_window_ends_at = db.Column(db.DateTime, nullable=True)
    deposit_claim_reason = db.Column(db.Text, nullable=True)
    deposit_claimed_at = db.Column(db.DateTime, nullable=True)
    deposit_released_at = db.Column(db.DateTime, nullable=True)
    deposit_refund_id = db.Column(db.String(255), nullable=True)
    deposit_transfer_id = db.Column(db.String(255), nullable=True)
    deposit_transfer_error = db.Column(db.Text, nullable=True)
    deposit_resolved_at = db.Column(db.DateTime, nullable=True)
    deposit_resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    deposit_admin_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    tool = db.relationship("Tool", backref=db.backref("rentals", lazy=True))
    renter = db.relationship("User", foreign_keys=[renter_id])
    owner = db.relationship("User", foreign_keys=[owner_id])

    @validates("renter_id", "owner_id")
    def _validate_parties(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} cannot change after the rental is created")
        return value

    @property
    def deposit_is_terminal(self) -> bool:
        return self.deposit_status in TERMINAL_DEPOSIT_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tool_id": self.tool_id,
            "tool_name": self.tool.name if self.tool else None,
            "renter_id": self.renter_id,
            "owner_id": self.owner_id,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "duration_days": self.duration_days,
            "notes": self.notes,
            "daily_rate_cents": self.daily_rate_cents,
            "rental_cost_cents": self.rental_cost_cents,
            "deposit_amount_cents": self.deposit_amount_cents,
            "total_cost_cents": self.total_cost_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "owner_payout_cents": self.owner_payout_cents,
            "status": self.status,
            "paid_at": to_utc_z(self.paid_at),
            "approved_at": to_utc_z(self.approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "payout_status": self.payout_status,
            "returned_at": to_utc_z(self.returned_at),
            "completed_at": to_utc_z(self.completed_at),
            "deposit_status": self.deposit_status,
            "claim_window_ends_at": to_utc_z(self.claim_window_ends_at),
            "deposit_claim_reason": self.deposit_claim_reason,
            "deposit_released_at": to_utc_z(self.deposit_released_at),
            "deposit_resolved_at": to_utc_z(self.deposit_resolved_at),
            "deposit_admin_notes": self.deposit_admin_notes,
            "created_at": to_utc_z(self.created_at),
        }
