"""Billing services package.

This package provides the billing core: activity aggregation, the bill
ledger, invoice attachments and the Stripe payment sync gateway.

Usage:
    from app.services import billing as billing_service
    billing_service.bills.create(db, payload, created_by=actor_id)
"""

from app.services.billing.activity import (
    ActivityAggregator,
    ActivityEvent,
    MessageActivitySource,
    compute_activity,
)
from app.services.billing.attachments import InvoiceAttachments
from app.services.billing.bills import Bills, amount_due
from app.services.billing.payment_sync import (
    PaymentSync,
    WebhookIngestion,
    invoice_idempotency_key,
)

# Singleton instances for service access
activity = ActivityAggregator()
bills = Bills()
attachments = InvoiceAttachments()
payment_sync = PaymentSync()
webhooks = WebhookIngestion()

__all__ = [
    "ActivityAggregator",
    "ActivityEvent",
    "Bills",
    "InvoiceAttachments",
    "MessageActivitySource",
    "PaymentSync",
    "WebhookIngestion",
    "activity",
    "amount_due",
    "attachments",
    "bills",
    "compute_activity",
    "invoice_idempotency_key",
    "payment_sync",
    "webhooks",
]
