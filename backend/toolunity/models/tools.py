from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Tool(db.Model):
    """
    A tool listed for rent by its owner.

    Deletion is soft (deleted_at set, available cleared) so historical
    rentals keep their tool reference.
    """
    __tablename__ = "tools"
    __table_args__ = (
        db.Index("ix_tools_owner_available", "owner_id", "available"),
        db.CheckConstraint("daily_rate_cents > 0", name="ck_tools_daily_rate_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(64), nullable=False, index=True)
    condition = db.Column(db.String(8), nullable=False, default="good")
    daily_rate_cents = db.Column(db.Integer, nullable=False)
    tool_value_cents = db.Column(db.Integer, nullable=True)
    images = db.Column(db.JSON, nullable=False, default=list)
    postcode = db.Column(db.String(10), nullable=True)

    available = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    owner = db.relationship("User", backref=db.backref("tools", lazy=True))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_username": self.owner.username if self.owner else None,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "condition": self.condition,
            "daily_rate_cents": self.daily_rate_cents,
            "tool_value_cents": self.tool_value_cents,
            "images": self.images or [],
            "postcode": self.postcode,
            "available": self.available,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ToolRequest(db.Model):
    """
    Community request for a tool nobody lists yet.

    upvote_count is only ever changed with SQL-side arithmetic; the
    tool_request_upvotes rows are the source of truth.
    """
    __tablename__ = "tool_requests"
    __table_args__ = (
        db.Index("ix_tool_requests_status_upvotes", "status", "upvote_count"),
        db.CheckConstraint("upvote_count >= 0", name="ck_tool_requests_upvotes_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    tool_name = db.Column(db.String(100), nullable=False)
    category = db.Column(db.String(64), nullable=False)
    postcode = db.Column(db.String(10), nullable=False)
    description = db.Column(db.Text, nullable=True)

    upvote_count = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="open")

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    user = db.relationship("User", backref=db.backref("tool_requests", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "requested_by": self.user.username if self.user else None,
            "tool_name": self.tool_name,
            "category": self.category,
            "postcode": self.postcode,
            "description": self.description,
            "upvote_count": self.upvote_count,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class ToolRequestUpvote(db.Model):
    __tablename__ = "tool_request_upvotes"
    __table_args__ = (
        db.UniqueConstraint("request_id", "user_id", name="uq_tool_request_upvotes_request_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("tool_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
