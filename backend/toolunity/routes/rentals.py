# Overview: Flask API routes for rentals; parses input and returns JSON responses.

"""
Rental API Routes

Renter side: quote, create, pay (Stripe checkout), mark returned.
Owner side: list requests, accept, reject.

SECURITY:
- Borrowing rate limited per user (20/hour), owner actions 20/hour
- Only the renter pays or returns, only the owner accepts or rejects
  (enforced again in rental_service)
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import rate_limit, require_auth, require_csrf, require_verified_email
from ..errors import ToolUnityError, ValidationFailed, error_response
from ..services import rental_service


rentals_bp = Blueprint("rentals", __name__, url_prefix="/api/rentals")


def _rental_request_args(data: dict) -> dict:
    tool_id = data.get("tool_id")
    if not isinstance(tool_id, int) or isinstance(tool_id, bool):
        raise ValidationFailed("tool_id must be an integer")
    return {
        "tool_id": tool_id,
        "start_date": data.get("start_date"),
        "end_date": data.get("end_date"),
    }


@rentals_bp.post("/quote")
@require_csrf
@require_auth
def quote_rental_route():
    """Validate a prospective rental and return its price breakdown without creating it."""
    try:
        data = request.get_json(silent=True) or {}
        quote = rental_service.quote_rental(g.current_user, **_rental_request_args(data))
        return jsonify({"quote": quote})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to quote rental")
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.post("")
@require_csrf
@require_auth
@require_verified_email
@rate_limit("borrow", by="user")
def create_rental_route():
    """
    Request body:
    {
        "tool_id": 12,
        "start_date": "2099-01-01",
        "end_date": "2099-01-05",
        "notes": "Collect after 6pm?"  (optional)
    }

    Returns 201 with the rental in pending_payment; the client continues with
    POST /api/rentals/<id>/checkout.
    """
    try:
        data = request.get_json(silent=True) or {}
        rental = rental_service.create_rental(
            g.current_user, notes=data.get("notes"), **_rental_request_args(data)
        )
        return jsonify({"rental": rental.to_dict()}), 201
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create rental")
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.post("/<int:rental_id>/checkout")
@require_csrf
@require_auth
def checkout_rental_route(rental_id: int):
    try:
        checkout = rental_service.start_checkout(g.current_user, rental_id)
        return jsonify(checkout)
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start checkout for rental %s", rental_id)
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.get("/mine")
@require_auth
def my_rentals_route():
    rentals = rental_service.list_renter_rentals(g.current_user)
    return jsonify({"rentals": [r.to_dict() for r in rentals]})


@rentals_bp.get("/owner-requests")
@require_auth
def owner_requests_route():
    try:
        rentals = rental_service.list_owner_requests(g.current_user, status=request.args.get("status") or None)
        return jsonify({"rentals": [r.to_dict() for r in rentals]})
    except ToolUnityError as e:
        return error_response(e)


@rentals_bp.get("/<int:rental_id>")
@require_auth
def get_rental_route(rental_id: int):
    try:
        rental = rental_service.get_rental_for_user(g.current_user, rental_id)
        return jsonify({"rental": rental.to_dict()})
    except ToolUnityError as e:
        return error_response(e)


@rentals_bp.post("/<int:rental_id>/accept")
@require_csrf
@require_auth
@rate_limit("owner_action", by="user")
def accept_rental_route(rental_id: int):
    try:
        rental = rental_service.accept_rental(g.current_user, rental_id)
        return jsonify({
            "rental": rental.to_dict(),
            "message": "Rental accepted. Your contact details are now shared with the renter.",
        })
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to accept rental %s", rental_id)
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.post("/<int:rental_id>/reject")
@require_csrf
@require_auth
@rate_limit("owner_action", by="user")
def reject_rental_route(rental_id: int):
    try:
        data = request.get_json(silent=True) or {}
        rental = rental_service.reject_rental(g.current_user, rental_id, data.get("reason"))
        return jsonify({"rental": rental.to_dict(), "message": "Rental rejected and renter refunded."})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject rental %s", rental_id)
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.post("/<int:rental_id>/return")
@require_csrf
@require_auth
def return_rental_route(rental_id: int):
    try:
        rental = rental_service.mark_returned(g.current_user, rental_id)
        return jsonify({"rental": rental.to_dict()})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark rental %s returned", rental_id)
        return jsonify({"error": "Internal server error"}), 500


@rentals_bp.post("/<int:rental_id>/cancel")
@require_csrf
@require_auth
def cancel_rental_route(rental_id: int):
    """Renter withdraws a rental they have not paid for yet."""
    try:
        rental = rental_service.cancel_rental(g.current_user, rental_id)
        return jsonify({"rental": rental.to_dict(), "message": "Rental cancelled."})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel rental %s", rental_id)
        return jsonify({"error": "Internal server error"}), 500
