"""Common helper functions for service layer.

This module provides reusable utilities for:
- UUID handling
- Query ordering and pagination
- Enum validation
- Entity retrieval by ID
- Monetary calculations
"""

from __future__ import annotations

import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, TypeVar

from app.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")

MONEY_QUANT = Decimal("0.01")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None.

    Raises:
        ValidationError: if value is not a valid UUID
    """
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid identifier: {value}") from exc


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Args:
        query: SQLAlchemy query object
        order_by: Column name to order by
        order_dir: Direction ('asc' or 'desc')
        allowed_columns: Dict mapping column names to SQLAlchemy columns

    Returns:
        Query with ordering applied

    Raises:
        ValidationError: if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise ValidationError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Returns:
        Enum member or None if value is None

    Raises:
        ValidationError: if value is not a valid enum member
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}") from exc


def get_by_id(db: Session, model: type[T], value, **kwargs) -> T | None:
    if value is None:
        return None
    return db.get(model, coerce_uuid(value), **kwargs)


def to_decimal(value, label: str = "amount") -> Decimal:
    """Convert value to a finite Decimal.

    Raises:
        ValidationError: if value is not a number, or is NaN or infinite
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid {label}") from exc
    if not result.is_finite():
        raise ValidationError(f"Invalid {label}")
    return result


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places, half-up."""
    try:
        return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError("Amount is out of range") from exc


def to_cents(value: Decimal | int | float | str) -> int:
    """Convert a monetary amount to integer minor units."""
    return int(round_money(value) * 100)


def from_cents(value: int | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return round_money(Decimal(int(value)) / 100)


def list_response(items: list, limit: int, offset: int) -> dict:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}
