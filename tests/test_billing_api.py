from decimal import Decimal

from app.config import settings
import importlib
payment_sync_module = importlib.import_module("app.services.billing.payment_sync")
from tests.conftest import auth_headers
from tests.mocks import sign_stripe_payload, stripe_event

BASE = "/api/v1/billing"
PDF_BYTES = b"%PDF-1.4 api invoice"


def _create_bill(client, subscriber, headers=None):
    return client.post(
        f"{BASE}/bills",
        json={
            "subscriber_id": str(subscriber.id),
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
        },
        headers=headers or auth_headers(),
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requires_token(client):
    response = client.get(f"{BASE}/bills")
    assert response.status_code == 401
    assert response.json()["code"] == "http_401"


def test_request_id_is_echoed(client):
    response = client.get(f"{BASE}/bills", headers={**auth_headers(), "X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_scopes_gate_writes(client, active_subscriber):
    reader = auth_headers(roles=(), scopes=("billing:read",), subject="viewer")
    assert client.get(f"{BASE}/bills", headers=reader).status_code == 200
    assert _create_bill(client, active_subscriber, headers=reader).status_code == 403

    writer = auth_headers(roles=(), scopes=("billing:write",), subject="clerk")
    assert _create_bill(client, active_subscriber, headers=writer).status_code == 201


def test_activity_endpoint(client, active_subscriber):
    response = client.get(
        f"{BASE}/activity",
        params={"period_start": "2026-03-01", "period_end": "2026-03-31"},
        headers=auth_headers(),
    )
    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    assert body[0]["subscriber_id"] == str(active_subscriber.id)
    assert Decimal(body[0]["total_fee"]) == Decimal("15.00")


def test_bill_lifecycle(client, active_subscriber):
    created = _create_bill(client, active_subscriber)
    assert created.status_code == 201
    bill = created.json()
    assert Decimal(bill["amount"]) == Decimal("15.00")
    assert bill["status"] == "draft"
    assert bill["created_by"] == "admin-1"

    duplicate = _create_bill(client, active_subscriber)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"

    credited = client.post(
        f"{BASE}/bills/{bill['id']}/credits",
        json={"amount": "5.00", "reason": "overpayment"},
        headers=auth_headers(),
    )
    assert credited.status_code == 200
    assert Decimal(credited.json()["account_credit"]) == Decimal("5.00")
    assert Decimal(credited.json()["amount_due"]) == Decimal("10.00")
    assert len(credited.json()["credits"]) == 1

    rejected = client.post(
        f"{BASE}/bills/{bill['id']}/status",
        json={"status": "sent", "payment_method": "cash"},
        headers=auth_headers(),
    )
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "validation_error"

    paid = client.post(
        f"{BASE}/bills/{bill['id']}/status",
        json={"status": "paid", "payment_date": "2026-04-02", "payment_method": "bank_transfer"},
        headers=auth_headers(),
    )
    assert paid.status_code == 200
    assert paid.json()["payment_method"] == "bank_transfer"

    stats = client.get(
        f"{BASE}/subscribers/{active_subscriber.id}/billing-stats", headers=auth_headers()
    )
    assert Decimal(stats.json()["total_paid"]) == Decimal("15.00")

    listing = client.get(f"{BASE}/bills", params={"status": "paid"}, headers=auth_headers())
    assert listing.json()["count"] == 1

    deleted = client.delete(f"{BASE}/bills/{bill['id']}", headers=auth_headers())
    assert deleted.status_code == 204
    assert client.get(f"{BASE}/bills/{bill['id']}", headers=auth_headers()).status_code == 404


def test_invalid_bill_id(client):
    response = client.get(f"{BASE}/bills/not-a-uuid", headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_reversed_period_is_rejected(client, active_subscriber):
    response = client.post(
        f"{BASE}/bills",
        json={
            "subscriber_id": str(active_subscriber.id),
            "period_start": "2026-03-31",
            "period_end": "2026-03-01",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 422


def test_upload_and_download_attachment(client, active_subscriber):
    bill = _create_bill(client, active_subscriber).json()
    uploaded = client.post(
        f"{BASE}/bills/{bill['id']}/attachments",
        files={"file": ("INV-0042.pdf", PDF_BYTES, "application/pdf")},
        data={"amount": "15.00", "is_primary": "true"},
        headers=auth_headers(),
    )
    assert uploaded.status_code == 201
    attachment = uploaded.json()
    assert attachment["invoice_number"] == "INV-0042"
    assert attachment["is_primary"] is True

    listed = client.get(f"{BASE}/bills/{bill['id']}/attachments", headers=auth_headers())
    assert [a["id"] for a in listed.json()] == [attachment["id"]]

    download = client.get(
        f"{BASE}/documents/{attachment['document_id']}/download", headers=auth_headers()
    )
    assert download.status_code == 200
    assert download.content == PDF_BYTES
    assert download.headers["content-disposition"] == 'attachment; filename="INV-0042.pdf"'

    unlinked = client.delete(f"{BASE}/attachments/{attachment['id']}", headers=auth_headers())
    assert unlinked.status_code == 204


def test_upload_rejects_disallowed_file(client, active_subscriber):
    bill = _create_bill(client, active_subscriber).json()
    response = client.post(
        f"{BASE}/bills/{bill['id']}/attachments",
        files={"file": ("run.sh", b"#!/bin/sh", "text/x-shellscript")},
        headers=auth_headers(),
    )
    assert response.status_code == 400


def test_batch_invoice_endpoint(client, active_subscriber, fake_stripe):
    _create_bill(client, active_subscriber)
    response = client.post(
        f"{BASE}/invoices/batch",
        json={
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
            "billing_period": "March 2026",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["errors"] == []
    assert len(body["success"]) == 1
    assert Decimal(body["total_amount"]) == Decimal("15.00")

    invoices = client.get(f"{BASE}/invoices", headers=auth_headers()).json()
    assert invoices["count"] == 1
    assert invoices["items"][0]["status"] == "open"


def test_batch_invoice_filters_subscribers(client, active_subscriber, fake_stripe):
    response = client.post(
        f"{BASE}/invoices/batch",
        json={
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
            "billing_period": "March 2026",
            "subscriber_ids": ["00000000-0000-0000-0000-000000000000"],
        },
        headers=auth_headers(),
    )
    assert response.json()["success"] == []
    assert fake_stripe.requests == []


def test_stripe_connection_endpoint(client):
    response = client.get(f"{BASE}/stripe/connection", headers=auth_headers())
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_webhook_endpoint(client):
    payload = stripe_event("evt_api", "charge.refunded", {"id": "ch_1"})
    headers = {"Stripe-Signature": sign_stripe_payload(payload, settings.stripe_webhook_secret)}

    first = client.post(f"{BASE}/payment-events/stripe", content=payload, headers=headers)
    assert first.status_code == 200
    assert first.json()["processed"] is True

    replay = client.post(f"{BASE}/payment-events/stripe", content=payload, headers=headers)
    assert replay.json()["duplicate"] is True


def test_webhook_rejects_bad_signature(client):
    payload = stripe_event("evt_api", "charge.refunded", {"id": "ch_1"})
    response = client.post(
        f"{BASE}/payment-events/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_stripe_payload(payload, "whsec_wrong")},
    )
    assert response.status_code == 403
    assert response.json()["code"] == "security_error"


def test_webhook_failure_returns_500(client, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(payment_sync_module.WebhookIngestion, "_dispatch", staticmethod(_boom))
    payload = stripe_event("evt_fail", "invoice.paid", {"id": "in_1"})
    headers = {"Stripe-Signature": sign_stripe_payload(payload, settings.stripe_webhook_secret)}

    response = client.post(f"{BASE}/payment-events/stripe", content=payload, headers=headers)
    assert response.status_code == 500
    body = response.json()
    assert body["processed"] is False
    assert body["error"] == "RuntimeError: boom"


def test_cleanup_endpoint(client):
    response = client.post(
        f"{BASE}/payment-events/cleanup", params={"keep_days": 30}, headers=auth_headers()
    )
    assert response.status_code == 200
    assert response.json() == {"deleted": 0}


def test_upload_rejects_non_finite_amount(client, active_subscriber):
    bill = _create_bill(client, active_subscriber).json()
    response = client.post(
        f"{BASE}/bills/{bill['id']}/attachments",
        files={"file": ("INV-0042.pdf", PDF_BYTES, "application/pdf")},
        data={"amount": "NaN"},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    listed = client.get(f"{BASE}/bills/{bill['id']}/attachments", headers=auth_headers())
    assert listed.json() == []


def test_invoice_records_list_payment_attempts(client, active_subscriber, fake_stripe):
    _create_bill(client, active_subscriber)
    client.post(
        f"{BASE}/invoices/batch",
        json={
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
            "billing_period": "March 2026",
        },
        headers=auth_headers(),
    )
    record = client.get(f"{BASE}/invoices", headers=auth_headers()).json()["items"][0]
    assert record["payment_attempts"] == []

    invoice = {
        "id": record["remote_id"],
        "object": "invoice",
        "customer": record["remote_customer_id"],
        "status": "paid",
        "amount_due": 1500,
        "amount_paid": 1500,
        "metadata": {"user_id": str(active_subscriber.id)},
    }
    payload = stripe_event("evt_api_paid", "invoice.paid", invoice)
    headers = {"Stripe-Signature": sign_stripe_payload(payload, settings.stripe_webhook_secret)}
    assert client.post(f"{BASE}/payment-events/stripe", content=payload, headers=headers).json()[
        "processed"
    ] is True

    record = client.get(f"{BASE}/invoices", headers=auth_headers()).json()["items"][0]
    assert record["status"] == "paid"
    assert [a["status"] for a in record["payment_attempts"]] == ["succeeded"]
    assert Decimal(record["payment_attempts"][0]["amount"]) == Decimal("15.00")
