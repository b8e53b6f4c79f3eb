# Overview: Flask API routes for owner payout account onboarding; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify

from ..decorators import require_auth, require_csrf, require_verified_email
from ..errors import ToolUnityError, error_response
from ..services import connect_service


connect_bp = Blueprint("connect", __name__, url_prefix="/api/connect")


@connect_bp.post("/onboarding")
@require_csrf
@require_auth
@require_verified_email
def onboarding_route():
    """Returns {"account_id": "acct_...", "url": "<Stripe-hosted onboarding link>"}"""
    try:
        return jsonify(connect_service.start_onboarding(g.current_user))
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start payout onboarding")
        return jsonify({"error": "Internal server error"}), 500


@connect_bp.get("/status")
@require_auth
def connect_status_route():
    try:
        return jsonify(connect_service.get_connect_status(g.current_user))
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to read payout account status")
        return jsonify({"error": "Internal server error"}), 500
