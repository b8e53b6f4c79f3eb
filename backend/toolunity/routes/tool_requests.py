# Overview: Flask API routes for the tool request board; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth, require_csrf
from ..errors import ToolUnityError, error_response
from ..services import session_service, tool_request_service


tool_requests_bp = Blueprint("tool_requests", __name__, url_prefix="/api/tool-requests")


def _optional_user():
    """Public listing still marks the caller's upvotes when a valid token is sent."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    context = session_service.validate_session(auth_header.split(" ", 1)[1].strip())
    return context.user if context else None


@tool_requests_bp.get("")
def list_requests_route():
    """
    Query params:
    - status: open (default) | fulfilled | closed
    - all=true: every status (admin dashboard)
    """
    try:
        result = tool_request_service.list_requests(
            request.args.get("status") or "open",
            include_all=request.args.get("all", "").lower() == "true",
            user=_optional_user(),
        )
        return jsonify({
            "requests": [r.to_dict() for r in result["requests"]],
            "upvoted_ids": result["upvoted_ids"],
        })
    except ToolUnityError as e:
        return error_response(e)


@tool_requests_bp.get("/mine")
@require_auth
def my_requests_route():
    requests = tool_request_service.list_user_requests(g.current_user)
    return jsonify({"requests": [r.to_dict() for r in requests]})


@tool_requests_bp.post("")
@require_csrf
@require_auth
def create_request_route():
    """
    Request body:
    {
        "tool_name": "Tile cutter",
        "category": "tiling",
        "postcode": "M1 1AE",
        "description": "Need one for a weekend bathroom job"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        tool_request = tool_request_service.create_request(
            g.current_user,
            data.get("tool_name"),
            data.get("category"),
            data.get("postcode"),
            data.get("description"),
        )
        return jsonify({"request": tool_request.to_dict()}), 201
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create tool request")
        return jsonify({"error": "Internal server error"}), 500


@tool_requests_bp.delete("/<int:request_id>")
@require_csrf
@require_auth
def delete_request_route(request_id: int):
    try:
        tool_request_service.delete_request(g.current_user, request_id)
        return jsonify({"deleted": True})
    except ToolUnityError as e:
        return error_response(e)


@tool_requests_bp.post("/<int:request_id>/upvote")
@require_csrf
@require_auth
def toggle_upvote_route(request_id: int):
    """Toggle: first call adds the caller's upvote, the next removes it."""
    try:
        return jsonify(tool_request_service.toggle_upvote(g.current_user, request_id))
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to toggle upvote on tool request %s", request_id)
        return jsonify({"error": "Internal server error"}), 500


@tool_requests_bp.post("/<int:request_id>/status")
@require_csrf
@require_auth
@require_admin
def set_status_route(request_id: int):
    try:
        data = request.get_json(silent=True) or {}
        tool_request = tool_request_service.set_status(g.current_user, request_id, data.get("status"))
        return jsonify({"request": tool_request.to_dict()})
    except ToolUnityError as e:
        return error_response(e)
