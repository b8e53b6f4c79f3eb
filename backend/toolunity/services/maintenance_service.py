# Overview: Service-layer operations for maintenance; encapsulates business logic and database work.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import User
from . import session_service, tier_service, tool_request_service


def recalculate_all_tiers(user_id: int | None = None) -> dict:
    """
    Re-run the tier calculator for one member or everyone.

    Repairs tiers and cached tool counts that drifted, e.g. after a failed
    refresh following a tool deletion.
    """
    query = db.session.query(User.id).filter(User.is_active.is_(True))
    if user_id is not None:
        query = query.filter(User.id == user_id)

    actions: dict[str, int] = {}
    for (uid,) in query.order_by(User.id).all():
        result = tier_service.recalculate_user_tier(uid)
        actions[result.action] = actions.get(result.action, 0) + 1
    return actions


def cleanup_sessions() -> int:
    removed = session_service.cleanup_expired_sessions()
    current_app.logger.info("Removed %d expired or revoked sessions", removed)
    return removed


def repair_upvote_counts() -> int:
    return tool_request_service.recount_upvotes()
