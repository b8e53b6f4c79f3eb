# Overview: Scheduler-triggered sweeps (approval timeout, unpaid checkouts, deposit release).

from flask import Blueprint, current_app, jsonify

from ..decorators import require_cron_secret
from ..services import deposit_service, rental_service


cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.post("/auto-decline")
@require_cron_secret
def auto_decline_route():
    """Refund and reject rentals the owner ignored past APPROVAL_TIMEOUT_HOURS."""
    try:
        return jsonify(rental_service.auto_decline_expired())
    except Exception:
        current_app.logger.exception("Auto-decline sweep failed")
        return jsonify({"error": "Internal server error"}), 500


@cron_bp.post("/auto-release")
@require_cron_secret
def auto_release_route():
    """Refund deposits whose claim window closed without a claim."""
    try:
        return jsonify(deposit_service.release_expired_deposits())
    except Exception:
        current_app.logger.exception("Deposit release sweep failed")
        return jsonify({"error": "Internal server error"}), 500


@cron_bp.post("/expire-checkouts")
@require_cron_secret
def expire_checkouts_route():
    """Expire rentals left unpaid past PAYMENT_TIMEOUT_HOURS."""
    try:
        return jsonify(rental_service.expire_stale_checkouts())
    except Exception:
        current_app.logger.exception("Checkout expiry sweep failed")
        return jsonify({"error": "Internal server error"}), 500
