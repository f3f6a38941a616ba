from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from flowledger.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Float, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum unit cost: 9,999,999.99 (999,999,999 cents)
MAX_UNIT_COST_CENTS = 999_999_999


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required on the write
    - non_blank: nullable text columns that still must carry a value for this write
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    non_blank: set[str] | None = None


BATCH_POLICY = ModelValidationPolicy(
    writable_fields={"id", "product_name", "quantity", "supplier", "unit_cost_cents", "created_by", "created_at"},
    required_on_create={"product_name", "quantity", "created_by"},
)

DISPATCH_PREPARE_POLICY = ModelValidationPolicy(
    writable_fields={"id", "batch_id", "quantity", "prepared_by", "prepared_at"},
    required_on_create={"batch_id", "quantity", "prepared_by"},
)

DISPATCH_APPROVAL_POLICY = ModelValidationPolicy(
    writable_fields={"transporter", "driver", "vehicle", "expected_delivery", "approved_by", "approved_at"},
    required_on_create={"transporter", "driver", "vehicle", "expected_delivery", "approved_by"},
    non_blank={"transporter", "driver", "vehicle", "approved_by"},
)

DISPATCH_DEPARTURE_POLICY = ModelValidationPolicy(
    writable_fields={"departed_by", "departed_at"},
    required_on_create=set(),
)

RECEIPT_POLICY = ModelValidationPolicy(
    writable_fields={"id", "quantity_received", "condition", "received_by", "received_at"},
    required_on_create={"quantity_received", "condition", "received_by"},
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            # Reject scientific notation (e.g., "1e15", "1E10")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            # Reject decimal points (e.g., "12.5")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        # Reject floats explicitly
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        # Other types
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{col.key} must be a number")

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
) -> dict:
    """
    Validates + normalizes incoming data against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create
    Returns a cleaned dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    missing = sorted(f for f in required if payload.get(f) is None)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}
    non_blank = policy.non_blank or set()

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable and not col.primary_key:
                raise ValidationError(f"{k} cannot be null")
            continue

        val = _coerce_value(col, raw)

        # Blank string check for text fields that must carry a value
        if isinstance(col.type, (String, Text)) and (not col.nullable or k in non_blank):
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def to_cents(value: Any, field: str = "unit_cost") -> int:
    """Convert a decimal money amount (e.g. 10, "12.50") to integer cents."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def enforce_rules_batch(patch: dict) -> None:
    if patch["quantity"] <= 0:
        raise ValidationError("quantity must be > 0")
    cost = patch.get("unit_cost_cents", 0)
    if cost < 0:
        raise ValidationError("unit_cost must be >= 0")
    if cost > MAX_UNIT_COST_CENTS:
        raise ValidationError(f"unit_cost cannot exceed {MAX_UNIT_COST_CENTS / 100:,.2f}")


def enforce_rules_dispatch(patch: dict, *, remaining_quantity: int) -> None:
    if patch["quantity"] <= 0:
        raise ValidationError("quantity must be > 0")
    if patch["quantity"] > remaining_quantity:
        raise ValidationError(
            f"Dispatch quantity {patch['quantity']} exceeds remaining batch quantity {remaining_quantity}"
        )


def enforce_rules_receipt(patch: dict, *, conditions: tuple[str, ...]) -> None:
    if patch["quantity_received"] < 0:
        raise ValidationError("quantity_received must be >= 0")
    if patch["condition"] not in conditions:
        raise ValidationError(f"condition must be one of: {', '.join(conditions)}")


def parse_photos(raw: Any, *, default_time: datetime, default_label: str | None = None) -> list[dict]:
    """
    Normalize photo capture records into PhotoEvidence column values.

    Accepts a list of {label, timestamp, location: {lat, lng}, image_ref, size_bytes}
    or a {label: photo} mapping (the capture widget's bag shape).
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = []
        for label in sorted(raw):
            photo = raw[label]
            if not isinstance(photo, dict):
                raise ValidationError(f"photo '{label}' must be an object")
            items.append({**photo, "label": photo.get("label") or label})
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValidationError("photos must be a list or an object")

    photos = []
    for index, photo in enumerate(items):
        if not isinstance(photo, dict):
            raise ValidationError(f"photos[{index}] must be an object")

        label = str(photo.get("label") or default_label or "").strip()
        if not label:
            raise ValidationError(f"photos[{index}].label is required")

        image_ref = photo.get("image_ref")
        if image_ref is None or str(image_ref).strip() == "":
            raise ValidationError(f"photos[{index}].image_ref is required")

        captured_at = default_time
        if photo.get("timestamp"):
            try:
                captured_at = parse_iso_datetime(str(photo["timestamp"]))
            except ValueError:
                raise ValidationError(f"photos[{index}].timestamp must be an ISO-8601 datetime")

        latitude = longitude = None
        location = photo.get("location")
        if location is not None:
            if not isinstance(location, dict) or "lat" not in location or "lng" not in location:
                raise ValidationError(f"photos[{index}].location must have lat and lng")
            try:
                latitude = float(location["lat"])
                longitude = float(location["lng"])
            except (TypeError, ValueError):
                raise ValidationError(f"photos[{index}].location must be numeric")

        size_bytes = photo.get("size_bytes", 0)
        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes < 0:
            raise ValidationError(f"photos[{index}].size_bytes must be a non-negative integer")

        photos.append(
            {
                "label": label,
                "captured_at": captured_at,
                "latitude": latitude,
                "longitude": longitude,
                "image_ref": str(image_ref).strip(),
                "size_bytes": size_bytes,
            }
        )
    return photos


def parse_date_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    """Query-string range filter; both ends optional and inclusive."""
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 datetimes")
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must be before end")
    return start_dt, end_dt
