from datetime import date, datetime, timezone
from decimal import Decimal
import uuid

import pytest

from app.errors import ValidationError
from app.services import billing as billing_service
from app.services.billing.activity import (
    ActivityEvent,
    SubscriberProfile,
    compute_activity,
    period_window,
)
from tests.conftest import MARCH_END, MARCH_START, add_messages, make_subscriber


class _ListSource:
    def __init__(self, events, profiles=None):
        self.events = events
        self._profiles = profiles or {}

    def events_between(self, start, end, subscriber_id=None):
        return [
            event
            for event in self.events
            if start <= event.timestamp < end
            and (subscriber_id is None or event.subscriber_id == subscriber_id)
        ]

    def profiles(self, subscriber_ids):
        return {sid: self._profiles[sid] for sid in subscriber_ids if sid in self._profiles}


def test_compute_activity_fee_breakdown(db_session, active_subscriber):
    summaries = billing_service.activity.compute(db_session, MARCH_START, MARCH_END)
    assert len(summaries) == 1
    summary = summaries[0]
    assert summary.subscriber_id == active_subscriber.id
    assert summary.username == active_subscriber.username
    assert summary.total_event_count == 15
    assert summary.standard_event_count == 12
    assert summary.manual_review_count == 3
    assert summary.standard_fee == Decimal("12.00")
    assert summary.manual_review_fee == Decimal("3.00")
    assert summary.total_fee == Decimal("15.00")
    assert summary.manual_review_reasons == ["flagged content"] * 3


def test_manual_review_only_subscriber_has_zero_standard_fee(db_session, subscriber):
    add_messages(db_session, subscriber, manual=2)
    summary = billing_service.activity.for_subscriber(
        db_session, subscriber.id, MARCH_START, MARCH_END
    )
    assert summary.standard_event_count == 0
    assert summary.standard_fee == Decimal("0")
    assert summary.total_fee == Decimal("2.00")


def test_quiet_period_yields_empty_list(db_session, active_subscriber):
    assert billing_service.activity.compute(db_session, date(2026, 4, 1), date(2026, 4, 30)) == []
    assert (
        billing_service.activity.for_subscriber(
            db_session, active_subscriber.id, date(2026, 4, 1), date(2026, 4, 30)
        )
        is None
    )


def test_period_end_day_is_included(db_session, subscriber):
    add_messages(
        db_session,
        subscriber,
        standard=1,
        when=datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc),
    )
    add_messages(
        db_session,
        subscriber,
        standard=1,
        when=datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc),
    )
    summary = billing_service.activity.for_subscriber(
        db_session, subscriber.id, MARCH_START, MARCH_END
    )
    assert summary.total_event_count == 1


def test_results_ordered_by_activity(db_session):
    quiet = make_subscriber(db_session)
    busy = make_subscriber(db_session)
    add_messages(db_session, quiet, standard=2)
    add_messages(db_session, busy, standard=5, manual=1)

    summaries = billing_service.activity.compute(db_session, MARCH_START, MARCH_END)
    assert [s.subscriber_id for s in summaries] == [busy.id, quiet.id]


def test_filter_by_subscriber(db_session, active_subscriber):
    other = make_subscriber(db_session)
    add_messages(db_session, other, standard=4)
    summaries = billing_service.activity.compute(
        db_session, MARCH_START, MARCH_END, str(other.id)
    )
    assert [s.subscriber_id for s in summaries] == [other.id]


def test_reversed_period_rejected(db_session):
    with pytest.raises(ValidationError):
        billing_service.activity.compute(db_session, MARCH_END, MARCH_START)


def test_fees_round_once_on_total():
    sub_id = uuid.uuid4()
    when = datetime(2026, 3, 5, tzinfo=timezone.utc)
    events = [ActivityEvent(sub_id, when) for _ in range(3)]
    events.append(ActivityEvent(sub_id, when, is_manual_review=True))
    source = _ListSource(events, {sub_id: SubscriberProfile(sub_id, username="acme")})

    summaries = compute_activity(
        source,
        MARCH_START,
        MARCH_END,
        standard_rate=Decimal("0.335"),
        manual_review_rate=Decimal("0.005"),
    )
    summary = summaries[0]
    assert summary.username == "acme"
    assert summary.standard_fee == Decimal("1.005")
    assert summary.manual_review_fee == Decimal("0.005")
    assert summary.total_fee == Decimal("1.01")


def test_period_window_is_half_open():
    start, end = period_window(MARCH_START, MARCH_END)
    assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 4, 1, tzinfo=timezone.utc)
