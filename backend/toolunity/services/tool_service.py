# Overview: Service-layer operations for tool listings; encapsulates business logic and database work.

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from ..errors import AuthorizationDenied, NotFound, ToolUnityError
from ..extensions import db
from ..models import Tool, User
from ..time_utils import utcnow
from ..validation import (
    DEFAULT_VALUE_MULTIPLIER,
    TOOL_POLICY,
    enforce_rules_tool,
    validate_payload,
)
from . import tier_service


def _get_owned_tool(owner: User, tool_id: int) -> Tool:
    tool = db.session.query(Tool).filter(Tool.id == tool_id, Tool.deleted_at.is_(None)).first()
    if not tool:
        raise NotFound(f"Tool {tool_id} not found")
    if tool.owner_id != owner.id:
        raise AuthorizationDenied("You can only change your own tools")
    return tool


def create_tool(owner: User, payload: dict) -> tuple[Tool, tier_service.TierResult]:
    """
    List a new tool. Returns the tool and the owner's refreshed tier, since
    listing is how members earn basic/standard for free.
    """
    if not owner.email_verified:
        raise AuthorizationDenied("Please verify your email before listing tools", reason="email_not_verified")

    patch = validate_payload(model=Tool, payload=payload, policy=TOOL_POLICY, partial=False)
    patch.setdefault("condition", "good")
    enforce_rules_tool(patch)
    if not patch.get("tool_value_cents"):
        patch["tool_value_cents"] = patch["daily_rate_cents"] * DEFAULT_VALUE_MULTIPLIER
    if patch.get("postcode"):
        patch["postcode"] = patch["postcode"].upper()

    tool = Tool(owner_id=owner.id, **patch)
    db.session.add(tool)
    db.session.commit()
    current_app.logger.info("Tool %s listed by user %s", tool.id, owner.id)

    return tool, tier_service.recalculate_user_tier(owner.id)


def update_tool(owner: User, tool_id: int, payload: dict) -> tuple[Tool, tier_service.TierResult]:
    tool = _get_owned_tool(owner, tool_id)

    patch = validate_payload(model=Tool, payload=payload, policy=TOOL_POLICY, partial=True)
    enforce_rules_tool(patch)
    if patch.get("postcode"):
        patch["postcode"] = patch["postcode"].upper()

    for key, value in patch.items():
        setattr(tool, key, value)
    db.session.commit()
    current_app.logger.info("Tool %s updated by user %s (%s)", tool.id, owner.id, ", ".join(sorted(patch)))

    # Availability changes move the owner's tool count
    return tool, tier_service.recalculate_user_tier(owner.id)


def delete_tool(owner: User, tool_id: int) -> tier_service.TierResult | None:
    """
    Soft delete: the row stays for rental history.

    The tier refresh afterwards is best effort; the deletion has already
    happened and the next recalculation will catch up.
    """
    tool = _get_owned_tool(owner, tool_id)
    tool.deleted_at = utcnow()
    tool.available = False
    db.session.commit()
    current_app.logger.info("Tool %s deleted by user %s", tool.id, owner.id)

    try:
        return tier_service.recalculate_user_tier(owner.id)
    except (ToolUnityError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.warning("Tier refresh after deleting tool %s failed: %s", tool_id, exc)
        return None


def get_tool(tool_id: int) -> Tool:
    tool = db.session.query(Tool).filter(Tool.id == tool_id, Tool.deleted_at.is_(None)).first()
    if not tool:
        raise NotFound(f"Tool {tool_id} not found")
    return tool


def list_tools(
    *,
    category: str | None = None,
    search: str | None = None,
    owner_id: int | None = None,
    include_unavailable: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Tool]:
    query = db.session.query(Tool).filter(Tool.deleted_at.is_(None))
    if not include_unavailable:
        query = query.filter(Tool.available.is_(True))
    if category:
        query = query.filter(Tool.category == category)
    if owner_id is not None:
        query = query.filter(Tool.owner_id == owner_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Tool.name.ilike(pattern), Tool.description.ilike(pattern)))

    return (
        query.order_by(Tool.created_at.desc(), Tool.id.desc())
        .offset(max(0, offset))
        .limit(min(max(1, limit), 100))
        .all()
    )
