# Overview: Flask API routes for tool listings; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import rate_limit, require_auth, require_csrf, require_verified_email
from ..errors import ToolUnityError, error_response
from ..services import tool_service


tools_bp = Blueprint("tools", __name__, url_prefix="/api/tools")


@tools_bp.get("")
def list_tools_route():
    """
    Query params: category, q (name/description search), owner_id, limit, offset.
    """
    try:
        owner_id = request.args.get("owner_id", type=int)
        tools = tool_service.list_tools(
            category=request.args.get("category") or None,
            search=request.args.get("q") or None,
            owner_id=owner_id,
            limit=request.args.get("limit", 50, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({"tools": [t.to_dict() for t in tools]})
    except ToolUnityError as e:
        return error_response(e)


@tools_bp.get("/<int:tool_id>")
def get_tool_route(tool_id: int):
    try:
        return jsonify({"tool": tool_service.get_tool(tool_id).to_dict()})
    except ToolUnityError as e:
        return error_response(e)


@tools_bp.post("")
@require_csrf
@require_auth
@require_verified_email
@rate_limit("tool_create", by="user")
def create_tool_route():
    """
    Request body:
    {
        "name": "Cordless drill",
        "description": "18V with two batteries and a case",
        "category": "power-tools",
        "condition": "good",          (optional: good | fair | poor)
        "daily_rate_cents": 500,
        "tool_value_cents": 12000,    (optional, defaults to 30 x daily rate)
        "images": ["https://..."],    (optional)
        "postcode": "SW1A 1AA"        (optional)
    }

    Returns the tool and the owner's tier after listing.
    """
    try:
        tool, tier = tool_service.create_tool(g.current_user, request.get_json(silent=True) or {})
        return jsonify({"tool": tool.to_dict(), "tier": tier.to_dict()}), 201
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create tool")
        return jsonify({"error": "Internal server error"}), 500


@tools_bp.patch("/<int:tool_id>")
@require_csrf
@require_auth
@rate_limit("tool_update", by="user")
def update_tool_route(tool_id: int):
    try:
        tool, tier = tool_service.update_tool(g.current_user, tool_id, request.get_json(silent=True) or {})
        return jsonify({"tool": tool.to_dict(), "tier": tier.to_dict()})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update tool %s", tool_id)
        return jsonify({"error": "Internal server error"}), 500


@tools_bp.delete("/<int:tool_id>")
@require_csrf
@require_auth
@rate_limit("tool_update", by="user")
def delete_tool_route(tool_id: int):
    try:
        tier = tool_service.delete_tool(g.current_user, tool_id)
        return jsonify({"deleted": True, "tier": tier.to_dict() if tier else None})
    except ToolUnityError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete tool %s", tool_id)
        return jsonify({"error": "Internal server error"}), 500
