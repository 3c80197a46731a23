"""Audit trail for admin and automated changes to billing records."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.audit import AuditEvent
from app.services.common import apply_pagination, coerce_uuid

SYSTEM_ACTOR = "system"


def _normalize_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, dict):
        return {key: _normalize_value(val) for key, val in value.items()}
    return value


def record_event(
    db: Session,
    *,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id,
    metadata: dict | None = None,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction (no commit)."""
    event = AuditEvent(
        actor_id=str(actor_id or SYSTEM_ACTOR),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        metadata_=_normalize_value(metadata) if metadata else None,
    )
    db.add(event)
    return event


def list_for_entity(db: Session, entity_type: str, entity_id, limit: int = 100, offset: int = 0):
    query = (
        db.query(AuditEvent)
        .filter(AuditEvent.entity_type == entity_type)
        .filter(AuditEvent.entity_id == str(coerce_uuid(entity_id)))
        .order_by(AuditEvent.occurred_at.asc())
    )
    return apply_pagination(query, limit, offset).all()
