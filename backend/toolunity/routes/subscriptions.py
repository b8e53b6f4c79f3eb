# Overview: Flask API routes for membership tiers and Stripe subscriptions; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_csrf, require_verified_email
from ..errors import ToolUnityError, error_response
from ..services import tier_service


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


@subscriptions_bp.get("/status")
@require_auth
def tier_status_route():
    return jsonify(tier_service.get_tier_status(g.current_user))


@subscriptions_bp.post("/checkout")
@require_csrf
@require_auth
@require_verified_email
def subscription_checkout_route():
    """Request body: {"tier": "basic" | "standard" | "pro"}"""
    try:
        data = request.get_json(silent=True) or {}
        return jsonify(tier_service.start_subscription_checkout(g.current_user, data.get("tier")))
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start subscription checkout")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/sync")
@require_csrf
@require_auth
def sync_subscription_route():
    """Re-read the member's subscription from Stripe and recompute their tier."""
    try:
        result = tier_service.sync_subscription(g.current_user)
        return jsonify({"tier": result.to_dict(), "status": tier_service.get_tier_status(g.current_user)})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/portal")
@require_csrf
@require_auth
def billing_portal_route():
    """Returns {"url": "<Stripe billing portal link>"}; 404 for members who never subscribed."""
    try:
        return jsonify(tier_service.create_billing_portal(g.current_user))
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open billing portal")
        return jsonify({"error": "Internal server error"}), 500
