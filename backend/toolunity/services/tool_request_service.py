# Overview: Service-layer operations for the tool request board; encapsulates business logic and database work.

"""
Request/Upvote Board

Members ask for tools nobody lists yet; others upvote to show demand.

upvote_count is never read-modify-written from Python. Increments and
decrements run as SQL arithmetic on the row, the decrement clamps at zero,
and the (request_id, user_id) unique constraint settles concurrent
duplicate upvotes.
"""

from __future__ import annotations

import re

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError

from ..errors import AuthorizationDenied, NotFound, PreconditionFailed, ValidationFailed
from ..extensions import db
from ..models import ToolRequest, ToolRequestUpvote, User


# Outward code then inward code, compared with all whitespace removed
UK_POSTCODE_RE = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?\d[A-Z]{2}$")

REQUEST_STATUSES = ("open", "fulfilled", "closed")
# open is the only state with a way out
STATUS_TRANSITIONS = {"open": ("fulfilled", "closed")}


def normalize_postcode(postcode: str | None) -> str:
    """Canonical "OUTWARD INWARD" form, e.g. " sw1a   1aa" -> "SW1A 1AA"."""
    compact = re.sub(r"\s+", "", postcode or "").upper()
    if not UK_POSTCODE_RE.match(compact):
        raise ValidationFailed("Please enter a valid UK postcode")
    return f"{compact[:-3]} {compact[-3:]}"


def create_request(
    user: User,
    tool_name: str | None,
    category: str | None,
    postcode: str | None,
    description: str | None = None,
) -> ToolRequest:
    tool_name = (tool_name or "").strip()
    category = (category or "").strip()
    if not tool_name:
        raise ValidationFailed("Tool name is required")
    if len(tool_name) > 100:
        raise ValidationFailed("Tool name must be at most 100 characters")
    if not category:
        raise ValidationFailed("Category is required")

    request = ToolRequest(
        user_id=user.id,
        tool_name=tool_name,
        category=category,
        postcode=normalize_postcode(postcode),
        description=(description or "").strip() or None,
        upvote_count=0,
        status="open",
    )
    db.session.add(request)
    db.session.commit()
    current_app.logger.info("Tool request %s created by user %s", request.id, user.id)
    return request


def _get_request(request_id: int) -> ToolRequest:
    request = db.session.query(ToolRequest).filter_by(id=request_id).first()
    if not request:
        raise NotFound(f"Tool request {request_id} not found")
    return request


def _current_count(request_id: int) -> int:
    return db.session.query(ToolRequest.upvote_count).filter_by(id=request_id).scalar() or 0


def toggle_upvote(user: User, request_id: int) -> dict:
    """
    Add the member's upvote, or remove it if already there.

    Returns {"action": "added" | "removed", "upvote_count": n}.
    """
    request = _get_request(request_id)
    if request.status != "open":
        raise PreconditionFailed(f"Tool request is {request.status}")

    removed = (
        db.session.query(ToolRequestUpvote)
        .filter_by(request_id=request.id, user_id=user.id)
        .delete(synchronize_session=False)
    )
    if removed:
        db.session.query(ToolRequest).filter_by(id=request.id).update(
            {
                ToolRequest.upvote_count: case(
                    (ToolRequest.upvote_count > 0, ToolRequest.upvote_count - 1),
                    else_=0,
                )
            },
            synchronize_session=False,
        )
        db.session.commit()
        db.session.expire(request)
        return {"action": "removed", "upvote_count": _current_count(request.id)}

    try:
        with db.session.begin_nested():
            db.session.add(ToolRequestUpvote(request_id=request.id, user_id=user.id))
    except IntegrityError:
        # A concurrent toggle from the same member inserted (and counted) first
        db.session.commit()
        return {"action": "added", "upvote_count": _current_count(request.id)}

    db.session.query(ToolRequest).filter_by(id=request.id).update(
        {ToolRequest.upvote_count: ToolRequest.upvote_count + 1},
        synchronize_session=False,
    )
    db.session.commit()
    db.session.expire(request)
    return {"action": "added", "upvote_count": _current_count(request.id)}


def set_status(admin: User, request_id: int, status: str) -> ToolRequest:
    if not admin.is_admin:
        raise AuthorizationDenied("Admin access required")
    if status not in REQUEST_STATUSES:
        raise ValidationFailed(f"Status must be one of: {', '.join(REQUEST_STATUSES)}")

    request = _get_request(request_id)
    if status not in STATUS_TRANSITIONS.get(request.status, ()):
        raise PreconditionFailed(f"Cannot move a {request.status} request to {status}")

    updated = (
        db.session.query(ToolRequest)
        .filter(ToolRequest.id == request.id, ToolRequest.status == "open")
        .update({"status": status}, synchronize_session="fetch")
    )
    if not updated:
        db.session.rollback()
        raise PreconditionFailed("Tool request is no longer open")
    db.session.commit()
    current_app.logger.info("Tool request %s marked %s by admin %s", request.id, status, admin.id)
    return request


def list_requests(
    status: str | None = "open",
    *,
    include_all: bool = False,
    user: User | None = None,
    limit: int = 100,
) -> dict:
    """
    Requests by demand (most upvoted first, then newest), plus the ids the
    given member has upvoted so clients can render toggle state.
    """
    query = db.session.query(ToolRequest)
    if not include_all:
        status = status or "open"
        if status not in REQUEST_STATUSES:
            raise ValidationFailed(f"Status must be one of: {', '.join(REQUEST_STATUSES)}")
        query = query.filter(ToolRequest.status == status)

    requests = (
        query.order_by(ToolRequest.upvote_count.desc(), ToolRequest.created_at.desc(), ToolRequest.id.desc())
        .limit(limit)
        .all()
    )

    upvoted_ids: list[int] = []
    if user is not None and requests:
        upvoted_ids = [
            row.request_id
            for row in db.session.query(ToolRequestUpvote.request_id).filter(
                ToolRequestUpvote.user_id == user.id,
                ToolRequestUpvote.request_id.in_([r.id for r in requests]),
            )
        ]

    return {"requests": requests, "upvoted_ids": upvoted_ids}


def list_user_requests(user: User) -> list[ToolRequest]:
    return (
        db.session.query(ToolRequest)
        .filter(ToolRequest.user_id == user.id)
        .order_by(ToolRequest.created_at.desc(), ToolRequest.id.desc())
        .all()
    )


def delete_request(user: User, request_id: int) -> None:
    request = _get_request(request_id)
    if request.user_id != user.id and not user.is_admin:
        raise AuthorizationDenied("You can only delete your own requests")
    if request.status != "open" and not user.is_admin:
        raise PreconditionFailed(f"Tool request is {request.status} and can no longer be deleted")

    db.session.query(ToolRequestUpvote).filter_by(request_id=request.id).delete(synchronize_session=False)
    db.session.delete(request)
    db.session.commit()
    current_app.logger.info("Tool request %s deleted by user %s", request_id, user.id)


def recount_upvotes() -> int:
    """
    Rewrite every upvote_count from the upvote rows.

    Returns the number of requests whose stored count was wrong.
    """
    actual = dict(
        db.session.query(ToolRequestUpvote.request_id, func.count(ToolRequestUpvote.id))
        .group_by(ToolRequestUpvote.request_id)
        .all()
    )
    repaired = 0
    for request in db.session.query(ToolRequest).all():
        expected = actual.get(request.id, 0)
        if request.upvote_count != expected:
            request.upvote_count = expected
            repaired += 1
    db.session.commit()
    if repaired:
        current_app.logger.info("Repaired upvote counts on %d tool request(s)", repaired)
    return repaired
