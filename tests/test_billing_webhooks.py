from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import time

import pytest

from app.errors import SecurityError, ValidationError
from app.models.billing import (
    BillStatus,
    ExternalInvoiceRecord,
    ExternalInvoiceStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    ProcessorCustomer,
    WebhookEvent,
)
from app.schemas.billing import BillStatusUpdate
from app.services import billing as billing_service
import importlib
payment_sync_module = importlib.import_module("app.services.billing.payment_sync")
from tests.conftest import MARCH_END, MARCH_START
from tests.mocks import sign_stripe_payload, stripe_event

SECRET = "whsec_unit_test"


def _ingest(db_session, payload: bytes, secret: str = SECRET, timestamp: int | None = None):
    return billing_service.webhooks.ingest(
        db_session, payload, sign_stripe_payload(payload, secret, timestamp), secret=SECRET
    )


@pytest.fixture()
def invoiced(db_session, bill, stripe_client):
    result = billing_service.payment_sync.create_batch_invoices(
        db_session,
        billing_service.activity.compute(db_session, MARCH_START, MARCH_END),
        "March 2026",
        requested_by="admin-1",
        client=stripe_client,
    )
    entry = result["success"][0]
    return db_session.get(ExternalInvoiceRecord, entry["record_id"])


def _invoice_object(record: ExternalInvoiceRecord, **overrides) -> dict:
    invoice = {
        "id": record.remote_id,
        "object": "invoice",
        "customer": record.remote_customer_id,
        "currency": "usd",
        "status": "open",
        "amount_due": 1500,
        "amount_paid": 0,
        "metadata": {"user_id": str(record.subscriber_id)},
    }
    invoice.update(overrides)
    return invoice


def _paid_invoice(record: ExternalInvoiceRecord) -> dict:
    return _invoice_object(
        record,
        status="paid",
        amount_paid=1500,
        status_transitions={"paid_at": int(datetime(2026, 4, 5, tzinfo=timezone.utc).timestamp())},
    )


def test_rejects_bad_signature(db_session):
    payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1"})
    with pytest.raises(SecurityError):
        _ingest(db_session, payload, secret="whsec_wrong")
    assert db_session.query(WebhookEvent).count() == 0


def test_rejects_stale_signature(db_session):
    payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1"})
    with pytest.raises(SecurityError):
        _ingest(db_session, payload, timestamp=int(time.time()) - 301)


def test_rejects_missing_signature(db_session):
    payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1"})
    with pytest.raises(SecurityError):
        billing_service.webhooks.ingest(db_session, payload, None, secret=SECRET)


def test_rejects_malformed_payload(db_session):
    with pytest.raises(ValidationError):
        _ingest(db_session, b"not json")
    with pytest.raises(ValidationError):
        _ingest(db_session, b'{"type": "invoice.paid"}')


def test_invoice_paid_marks_bill_paid(db_session, bill, invoiced):
    result = _ingest(db_session, stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced)))
    assert result["processed"] is True
    assert result["attempts"] == 1

    db_session.refresh(invoiced)
    assert invoiced.status == ExternalInvoiceStatus.paid
    assert invoiced.amount_paid == Decimal("15.00")
    db_session.refresh(bill)
    assert bill.status == BillStatus.paid
    assert bill.payment_method == "stripe"
    assert bill.payment_reference == invoiced.remote_id
    assert bill.payment_date == date(2026, 4, 5)

    attempts = db_session.query(PaymentAttempt).all()
    assert [a.status for a in attempts] == [PaymentAttemptStatus.succeeded]
    assert attempts[0].amount == Decimal("15.00")


def test_replayed_event_is_a_no_op(db_session, invoiced):
    payload = stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced))
    _ingest(db_session, payload)
    replay = _ingest(db_session, payload)

    assert replay["processed"] is True
    assert replay["duplicate"] is True
    assert replay["attempts"] == 1
    assert db_session.query(PaymentAttempt).count() == 1
    assert db_session.query(WebhookEvent).count() == 1


def test_second_success_event_records_one_payment(db_session, invoiced):
    _ingest(db_session, stripe_event("evt_a", "invoice.payment_succeeded", _paid_invoice(invoiced)))
    _ingest(db_session, stripe_event("evt_b", "invoice.paid", _paid_invoice(invoiced)))
    assert db_session.query(PaymentAttempt).count() == 1


def test_paid_bill_keeps_status_but_mirror_is_synced(db_session, bill, invoiced):
    billing_service.bills.update_status(
        db_session,
        bill.id,
        BillStatusUpdate(
            status=BillStatus.paid, payment_date=date(2026, 4, 1), payment_method="bank_transfer"
        ),
        "admin-1",
    )
    stale = datetime(2026, 1, 1, tzinfo=timezone.utc)
    invoiced.synced_at = stale
    db_session.commit()

    result = _ingest(db_session, stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced)))
    assert result["processed"] is True

    db_session.refresh(bill)
    assert bill.status == BillStatus.paid
    assert bill.payment_method == "bank_transfer"
    assert bill.payment_date == date(2026, 4, 1)
    db_session.refresh(invoiced)
    assert invoiced.synced_at.replace(tzinfo=None) > stale.replace(tzinfo=None)


def test_payment_failed_records_reason(db_session, bill, invoiced):
    failed = _invoice_object(
        invoiced,
        last_payment_error={"code": "card_declined", "message": "Your card was declined."},
    )
    result = _ingest(db_session, stripe_event("evt_failed", "invoice.payment_failed", failed))
    assert result["processed"] is True

    attempt = db_session.query(PaymentAttempt).one()
    assert attempt.status == PaymentAttemptStatus.failed
    assert attempt.failure_reason == "card_declined: Your card was declined."
    assert attempt.amount == Decimal("15.00")
    db_session.refresh(bill)
    assert bill.status == BillStatus.sent


def test_voided_invoice_cancels_bill(db_session, bill, invoiced):
    _ingest(db_session, stripe_event("evt_void", "invoice.voided", _invoice_object(invoiced, status="void")))
    db_session.refresh(bill)
    assert bill.status == BillStatus.cancelled


def test_uncollectible_invoice_marks_bill_overdue(db_session, bill, invoiced):
    _ingest(
        db_session,
        stripe_event(
            "evt_uncollectible",
            "invoice.marked_uncollectible",
            _invoice_object(invoiced, status="uncollectible"),
        ),
    )
    db_session.refresh(bill)
    assert bill.status == BillStatus.overdue


def test_cancelled_bill_is_not_reopened_by_payment(db_session, bill, invoiced):
    billing_service.bills.update_status(
        db_session, bill.id, BillStatusUpdate(status=BillStatus.cancelled), "admin-1"
    )
    _ingest(db_session, stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced)))
    db_session.refresh(bill)
    assert bill.status == BillStatus.cancelled


def test_failed_processing_is_rolled_back_and_retried(db_session, bill, invoiced, monkeypatch):
    original = payment_sync_module._sync_bill_from_record

    def _boom(*args, **kwargs):
        raise RuntimeError("bill store unavailable")

    monkeypatch.setattr(payment_sync_module, "_sync_bill_from_record", _boom)
    payload = stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced))
    first = _ingest(db_session, payload)

    assert first["processed"] is False
    assert first["attempts"] == 1
    assert first["error"] == "RuntimeError: bill store unavailable"
    event = db_session.query(WebhookEvent).one()
    assert event.processed is False
    assert event.last_error == "RuntimeError: bill store unavailable"
    db_session.refresh(invoiced)
    assert invoiced.status == ExternalInvoiceStatus.open
    assert db_session.query(PaymentAttempt).count() == 0

    monkeypatch.setattr(payment_sync_module, "_sync_bill_from_record", original)
    second = _ingest(db_session, payload)
    assert second["processed"] is True
    assert second["attempts"] == 2
    db_session.refresh(event)
    assert event.processed is True
    assert event.last_error is None
    db_session.refresh(bill)
    assert bill.status == BillStatus.paid


def test_invoice_for_unknown_subscriber_is_skipped(db_session):
    invoice = {"id": "in_unknown", "object": "invoice", "customer": "cus_unknown", "status": "open"}
    result = _ingest(db_session, stripe_event("evt_x", "invoice.finalized", invoice))
    assert result["processed"] is True
    assert db_session.query(ExternalInvoiceRecord).count() == 0


def test_invoice_created_elsewhere_is_recorded(db_session, bill, active_subscriber):
    invoice = {
        "id": "in_dashboard",
        "object": "invoice",
        "customer": "cus_dashboard",
        "status": "open",
        "amount_due": 1500,
        "metadata": {
            "user_id": str(active_subscriber.id),
            "period_start": MARCH_START.isoformat(),
            "period_end": MARCH_END.isoformat(),
        },
    }
    _ingest(db_session, stripe_event("evt_fin", "invoice.finalized", invoice))

    record = db_session.query(ExternalInvoiceRecord).one()
    assert record.idempotency_key == "wh-in_dashboard"
    assert record.bill_id == bill.id
    assert record.status == ExternalInvoiceStatus.open
    db_session.refresh(bill)
    assert bill.status == BillStatus.sent


def test_customer_events_maintain_cache(db_session, subscriber):
    customer = {
        "id": "cus_hook",
        "object": "customer",
        "email": subscriber.email,
        "name": "Test User",
        "metadata": {"user_id": str(subscriber.id)},
    }
    _ingest(db_session, stripe_event("evt_c1", "customer.created", customer))
    cached = db_session.query(ProcessorCustomer).one()
    assert cached.remote_customer_id == "cus_hook"

    _ingest(db_session, stripe_event("evt_c2", "customer.updated", {**customer, "name": "Renamed"}))
    db_session.refresh(cached)
    assert cached.name == "Renamed"

    _ingest(db_session, stripe_event("evt_c3", "customer.deleted", customer))
    assert db_session.query(ProcessorCustomer).count() == 0


def test_unhandled_event_is_acknowledged(db_session):
    result = _ingest(db_session, stripe_event("evt_other", "charge.refunded", {"id": "ch_1"}))
    assert result["processed"] is True
    assert db_session.query(WebhookEvent).one().event_type == "charge.refunded"


def test_cleanup_removes_old_processed_events(db_session):
    _ingest(db_session, stripe_event("evt_old", "charge.refunded", {"id": "ch_1"}))
    _ingest(db_session, stripe_event("evt_new", "charge.refunded", {"id": "ch_2"}))
    old_unprocessed = WebhookEvent(
        remote_event_id="evt_stuck",
        event_type="invoice.paid",
        processed=False,
        received_at=datetime.now(timezone.utc) - timedelta(days=90),
    )
    db_session.add(old_unprocessed)
    old = db_session.query(WebhookEvent).filter(WebhookEvent.remote_event_id == "evt_old").one()
    old.received_at = datetime.now(timezone.utc) - timedelta(days=40)
    db_session.commit()

    deleted = billing_service.webhooks.cleanup(db_session, keep_days=30)

    assert deleted == 1
    remaining = {row.remote_event_id for row in db_session.query(WebhookEvent).all()}
    assert remaining == {"evt_new", "evt_stuck"}


def test_list_events_by_state(db_session):
    _ingest(db_session, stripe_event("evt_1", "charge.refunded", {"id": "ch_1"}))
    db_session.add(WebhookEvent(remote_event_id="evt_2", event_type="invoice.paid"))
    db_session.commit()
    assert [e.remote_event_id for e in billing_service.webhooks.list_events(db_session, processed=False)] == [
        "evt_2"
    ]


@pytest.mark.parametrize(
    "late_type,late_status",
    [("invoice.created", "draft"), ("invoice.finalized", "open")],
)
def test_late_event_does_not_reopen_paid_invoice(
    db_session, bill, invoiced, stripe_client, fake_stripe, late_type, late_status
):
    _ingest(db_session, stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced)))
    late = _invoice_object(invoiced, status=late_status, amount_paid=0)
    result = _ingest(db_session, stripe_event("evt_late", late_type, late))
    assert result["processed"] is True

    db_session.refresh(invoiced)
    assert invoiced.status == ExternalInvoiceStatus.paid
    assert invoiced.amount_paid == Decimal("15.00")
    db_session.refresh(bill)
    assert bill.status == BillStatus.paid

    invoice_posts = len(fake_stripe.calls("POST", "/v1/invoices"))
    rerun = billing_service.payment_sync.create_batch_invoices(
        db_session,
        billing_service.activity.compute(db_session, MARCH_START, MARCH_END),
        "March 2026",
        requested_by="admin-1",
        client=stripe_client,
    )
    assert rerun["success"][0]["reused"] is True
    assert rerun["success"][0]["remote_invoice_id"] == invoiced.remote_id
    assert len(fake_stripe.calls("POST", "/v1/invoices")) == invoice_posts
    db_session.refresh(invoiced)
    assert invoiced.status == ExternalInvoiceStatus.paid


def test_payment_event_after_void_is_ignored(db_session, bill, invoiced):
    _ingest(db_session, stripe_event("evt_void", "invoice.voided", _invoice_object(invoiced, status="void")))
    _ingest(db_session, stripe_event("evt_paid", "invoice.paid", _paid_invoice(invoiced)))

    db_session.refresh(invoiced)
    assert invoiced.status == ExternalInvoiceStatus.void
    assert db_session.query(PaymentAttempt).count() == 0
    db_session.refresh(bill)
    assert bill.status == BillStatus.cancelled


def test_customer_event_with_malformed_user_id_is_acknowledged(db_session):
    customer = {
        "id": "cus_bad",
        "object": "customer",
        "email": "someone@example.com",
        "metadata": {"user_id": "not-a-uuid"},
    }
    result = _ingest(db_session, stripe_event("evt_bad_user", "customer.created", customer))

    assert result["processed"] is True
    assert db_session.query(ProcessorCustomer).count() == 0
    assert db_session.query(WebhookEvent).one().last_error is None
