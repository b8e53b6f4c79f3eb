# Overview: Flask API route receiving Stripe webhooks.

from flask import Blueprint, current_app, jsonify, request

from ..errors import ToolUnityError, ValidationFailed, error_response
from ..services import webhook_service


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    """
    Signature-verified Stripe events. No session and no CSRF token: the
    Stripe-Signature header is the authentication.

    Returns 400 on a bad signature (Stripe will not retry) and 500 on
    processing errors (Stripe retries with backoff).
    """
    gateway = current_app.extensions["payments"]
    try:
        event = gateway.construct_event(request.get_data(), request.headers.get("Stripe-Signature"))
    except ValidationFailed as e:
        current_app.logger.warning("Rejected Stripe webhook: %s", e)
        return error_response(e)
    except ToolUnityError as e:
        current_app.logger.error("Stripe webhook cannot be verified: %s", e)
        return error_response(e)

    try:
        result = webhook_service.dispatch(event)
        return jsonify({"received": True, **result})
    except ToolUnityError as e:
        current_app.logger.warning("Stripe event %s failed: %s", event.get("id"), e)
        return error_response(e)
    except Exception:
        current_app.logger.exception("Stripe event %s processing failed", event.get("id"))
        return jsonify({"error": "Webhook processing failed"}), 500
