# Overview: Flask API routes for deposit claims and admin resolution; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import rate_limit, require_admin, require_auth, require_csrf
from ..errors import ToolUnityError, error_response
from ..services import deposit_service


deposits_bp = Blueprint("deposits", __name__, url_prefix="/api/deposits")


@deposits_bp.post("/claim")
@require_csrf
@require_auth
@rate_limit("claim", by="user")
def file_claim_route():
    """
    Owner reports damage within the claim window.

    Request body: {"rental_id": 42, "reason": "Chuck is cracked and wobbles"}
    """
    try:
        data = request.get_json(silent=True) or {}
        rental = deposit_service.file_claim(g.current_user, data.get("rental_id"), data.get("reason"))
        return jsonify({"rental": rental.to_dict(), "message": "Claim filed. An admin will review it."})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to file deposit claim")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.get("/admin")
@require_auth
@require_admin
def list_deposits_route():
    try:
        rentals = deposit_service.list_deposits(request.args.get("status") or None)
        return jsonify({
            "deposits": [r.to_dict() for r in rentals],
            "summary": deposit_service.deposit_summary(),
        })
    except ToolUnityError as e:
        return error_response(e)


@deposits_bp.post("/admin/<int:rental_id>/resolve")
@require_csrf
@require_auth
@require_admin
def resolve_claim_route(rental_id: int):
    """
    Request body: {"action": "refund" | "forfeit", "admin_notes": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        rental = deposit_service.resolve_claim(
            g.current_user, rental_id, data.get("action"), data.get("admin_notes")
        )
        return jsonify({"rental": rental.to_dict()})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to resolve deposit claim on rental %s", rental_id)
        return jsonify({"error": "Internal server error"}), 500
