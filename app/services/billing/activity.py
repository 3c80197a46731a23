"""Billable activity aggregation over the message log."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import PersistenceError, ValidationError
from app.models.message import Message
from app.models.subscriber import Subscriber
from app.schemas.billing import ActivitySummary
from app.services.common import coerce_uuid, round_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityEvent:
    subscriber_id: uuid.UUID
    timestamp: datetime
    is_manual_review: bool = False
    review_reason: str | None = None


@dataclass(frozen=True)
class SubscriberProfile:
    subscriber_id: uuid.UUID
    username: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    account_type: str | None = None


class ActivitySource(Protocol):
    def events_between(
        self, start: datetime, end: datetime, subscriber_id: uuid.UUID | None = None
    ) -> Iterable[ActivityEvent]: ...

    def profiles(self, subscriber_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, SubscriberProfile]: ...


class MessageActivitySource:
    """Reads billable events from the ``messages`` table."""

    def __init__(self, db: Session):
        self.db = db

    def events_between(self, start, end, subscriber_id=None):
        query = (
            self.db.query(
                Message.subscriber_id,
                Message.created_at,
                Message.manual_review,
                Message.manual_review_reason,
            )
            .filter(Message.created_at >= start)
            .filter(Message.created_at < end)
        )
        if subscriber_id is not None:
            query = query.filter(Message.subscriber_id == subscriber_id)
        try:
            rows = query.order_by(Message.created_at.asc(), Message.id.asc()).all()
        except SQLAlchemyError as exc:
            logger.exception("Failed to read message activity")
            raise PersistenceError("Activity store unavailable") from exc
        return [
            ActivityEvent(
                subscriber_id=row.subscriber_id,
                timestamp=row.created_at,
                is_manual_review=bool(row.manual_review),
                review_reason=row.manual_review_reason,
            )
            for row in rows
        ]

    def profiles(self, subscriber_ids):
        ids = list(subscriber_ids)
        if not ids:
            return {}
        try:
            subscribers = self.db.query(Subscriber).filter(Subscriber.id.in_(ids)).all()
        except SQLAlchemyError as exc:
            logger.exception("Failed to read subscriber profiles")
            raise PersistenceError("Activity store unavailable") from exc
        return {
            sub.id: SubscriberProfile(
                subscriber_id=sub.id,
                username=sub.username,
                email=sub.email,
                first_name=sub.first_name,
                last_name=sub.last_name,
                account_type=sub.account_type,
            )
            for sub in subscribers
        }


def period_window(period_start: date, period_end: date) -> tuple[datetime, datetime]:
    """Turn an inclusive date range into a half-open UTC datetime window."""
    if period_end < period_start:
        raise ValidationError("period_end must not be before period_start")
    start = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def compute_activity(
    source: ActivitySource,
    period_start: date,
    period_end: date,
    subscriber_id=None,
    *,
    standard_rate: Decimal | None = None,
    manual_review_rate: Decimal | None = None,
) -> list[ActivitySummary]:
    """Summarize billable activity per subscriber for an inclusive date range.

    Fees are exact products of count and rate; the two-decimal rounding is
    applied once, to the total. Subscribers with no events are omitted, so a
    quiet period yields an empty list. Results are ordered most active first.
    """
    standard_rate = settings.standard_unit_rate if standard_rate is None else standard_rate
    manual_review_rate = (
        settings.manual_review_rate if manual_review_rate is None else manual_review_rate
    )
    start, end = period_window(period_start, period_end)
    subscriber_uuid = coerce_uuid(subscriber_id)

    buckets: dict[uuid.UUID, list[ActivityEvent]] = defaultdict(list)
    for event in source.events_between(start, end, subscriber_uuid):
        if subscriber_uuid is not None and event.subscriber_id != subscriber_uuid:
            continue
        buckets[event.subscriber_id].append(event)
    if not buckets:
        return []

    profiles = source.profiles(buckets.keys())
    summaries = []
    for sub_id, events in buckets.items():
        manual = [event for event in events if event.is_manual_review]
        standard_count = len(events) - len(manual)
        standard_fee = Decimal(standard_count) * standard_rate
        manual_review_fee = Decimal(len(manual)) * manual_review_rate
        timestamps = [event.timestamp for event in events]
        profile = profiles.get(sub_id) or SubscriberProfile(subscriber_id=sub_id)
        summaries.append(
            ActivitySummary(
                subscriber_id=sub_id,
                username=profile.username,
                email=profile.email,
                first_name=profile.first_name,
                last_name=profile.last_name,
                account_type=profile.account_type,
                period_start=period_start,
                period_end=period_end,
                total_event_count=len(events),
                standard_event_count=standard_count,
                manual_review_count=len(manual),
                standard_fee=standard_fee,
                manual_review_fee=manual_review_fee,
                total_fee=round_money(standard_fee + manual_review_fee),
                first_event_at=min(timestamps),
                last_event_at=max(timestamps),
                manual_review_reasons=[e.review_reason for e in manual if e.review_reason],
            )
        )
    summaries.sort(key=lambda s: (-s.total_event_count, str(s.subscriber_id)))
    logger.debug(
        "Computed activity for %s subscribers %s..%s", len(summaries), period_start, period_end
    )
    return summaries


class ActivityAggregator:
    @staticmethod
    def compute(db: Session, period_start: date, period_end: date, subscriber_id=None):
        return compute_activity(
            MessageActivitySource(db), period_start, period_end, subscriber_id
        )

    @staticmethod
    def for_subscriber(db: Session, subscriber_id, period_start: date, period_end: date):
        """Single-subscriber lookup; returns ``None`` when there is no activity."""
        summaries = compute_activity(
            MessageActivitySource(db), period_start, period_end, subscriber_id
        )
        return summaries[0] if summaries else None
