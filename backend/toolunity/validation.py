from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text

from .errors import ValidationFailed
from .time_utils import parse_iso_datetime


TOOL_CONDITIONS = ("good", "fair", "poor")
TOOL_NAME_LENGTH = (3, 100)
TOOL_DESCRIPTION_LENGTH = (10, 1000)
# £0.50 - £500.00 per day
MIN_DAILY_RATE_CENTS = 50
MAX_DAILY_RATE_CENTS = 50_000
MAX_TOOL_VALUE_CENTS = 10_000_000
# Assessed value when the owner gives none
DEFAULT_VALUE_MULTIPLIER = 30
MAX_IMAGES = 10


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = field(default_factory=frozenset)


TOOL_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "name", "description", "category", "condition", "daily_rate_cents",
        "tool_value_cents", "images", "postcode", "available",
    }),
    required_on_create=frozenset({"name", "description", "category", "daily_rate_cents"}),
)


def _columns_by_key(model) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or "e" in stripped.lower() or "." in stripped:
                raise ValidationFailed(f"{col.key} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationFailed(f"{col.key} must be an integer")
        raise ValidationFailed(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationFailed(f"{col.key} must be true or false")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        try:
            dt = parse_iso_datetime(str(value))
        except ValueError:
            dt = None
        if dt is None:
            raise ValidationFailed(f"{col.key} must be an ISO-8601 datetime")
        return dt

    if isinstance(coltype, JSON):
        return value

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(*, model, payload: dict, policy: ModelValidationPolicy, partial: bool) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) in (None, ""))
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise ValidationFailed(f"Field not allowed: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationFailed(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationFailed(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationFailed(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_length(patch: dict, key: str, bounds: tuple[int, int], label: str) -> None:
    if key in patch:
        lo, hi = bounds
        if not lo <= len(patch[key] or "") <= hi:
            raise ValidationFailed(f"{label} must be between {lo} and {hi} characters")


def enforce_rules_tool(patch: dict) -> None:
    """Business rules for tool listings that column metadata does not capture."""
    _check_length(patch, "name", TOOL_NAME_LENGTH, "Name")
    _check_length(patch, "description", TOOL_DESCRIPTION_LENGTH, "Description")

    if "condition" in patch and patch["condition"] not in TOOL_CONDITIONS:
        raise ValidationFailed(f"Condition must be one of: {', '.join(TOOL_CONDITIONS)}")

    if "daily_rate_cents" in patch:
        rate = patch["daily_rate_cents"]
        if rate < MIN_DAILY_RATE_CENTS or rate > MAX_DAILY_RATE_CENTS:
            raise ValidationFailed(
                f"Daily rate must be between £{MIN_DAILY_RATE_CENTS / 100:.2f} and £{MAX_DAILY_RATE_CENTS / 100:.2f}"
            )

    value = patch.get("tool_value_cents")
    if value is not None and (value <= 0 or value > MAX_TOOL_VALUE_CENTS):
        raise ValidationFailed("Tool value must be a positive amount up to £100,000")

    if "images" in patch:
        images = patch["images"] or []
        if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
            raise ValidationFailed("images must be a list of URLs")
        if len(images) > MAX_IMAGES:
            raise ValidationFailed(f"At most {MAX_IMAGES} images per tool")
