"""Payment sync gateway: batch invoicing to Stripe and webhook ingestion."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.config import settings
from app.errors import (
    BillingError,
    ExternalServiceError,
    NotFoundError,
    SecurityError,
    ValidationError,
)
from app.models.billing import (
    BillStatus,
    ExternalInvoiceRecord,
    ExternalInvoiceStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    ProcessorCustomer,
    WebhookEvent,
)
from app.models.subscriber import Subscriber
from app.schemas.billing import ActivitySummary
from app.services import audit as audit_service
from app.services.billing.bills import Bills, set_status
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    from_cents,
    get_by_id,
    round_money,
    to_cents,
    validate_enum,
)
from app.services.stripe_client import StripeClient, mask_key, verify_webhook_signature

logger = logging.getLogger(__name__)

BILLING_PERIOD_RE = re.compile(r"^[A-Za-z]+ \d{4}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
USERNAME_SAFE_RE = re.compile(r"[^a-zA-Z0-9_.-]")
NAME_SAFE_RE = re.compile(r"[^a-zA-Z\s'-]")
WEBHOOK_SOURCE = "stripe-webhook"


def invoice_idempotency_key(subscriber_id, period_start: date, period_end: date) -> str:
    """Stable key for one subscriber's invoice for one period."""
    raw = f"{subscriber_id}|{period_start.isoformat()}|{period_end.isoformat()}"
    return "inv-" + hashlib.sha256(raw.encode()).hexdigest()[:32]


def _from_timestamp(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _parse_date(value) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


def _sanitize_name(first_name: str | None, last_name: str | None) -> str:
    name = f"{first_name or ''} {last_name or ''}".strip()
    name = NAME_SAFE_RE.sub("", name)
    return re.sub(r"\s+", " ", name)[:100]


def _remote_status(value: str | None) -> ExternalInvoiceStatus | None:
    if not value:
        return None
    try:
        return ExternalInvoiceStatus(value)
    except ValueError:
        logger.warning("Unknown remote invoice status %s", value)
        return None


def can_advance(current: ExternalInvoiceStatus | None, new: ExternalInvoiceStatus) -> bool:
    """Whether the mirror may move from ``current`` to ``new``.

    Stripe invoices only move forward (draft, open, then paid, void or
    uncollectible), and an uncollectible invoice can still be paid or voided.
    Webhooks arrive in any order, so a payload that would move the mirror
    backwards is stale.
    """
    if current is None or current == new:
        return True
    if current in (ExternalInvoiceStatus.paid, ExternalInvoiceStatus.void):
        return False
    if current == ExternalInvoiceStatus.uncollectible:
        return new in (ExternalInvoiceStatus.paid, ExternalInvoiceStatus.void)
    if current == ExternalInvoiceStatus.open:
        return new != ExternalInvoiceStatus.draft
    return True


def apply_remote_invoice(record: ExternalInvoiceRecord, invoice: dict) -> bool:
    """Copy mirror fields from a Stripe invoice object onto the record.

    Returns ``False`` when the payload is older than the mirror, in which
    case only ``synced_at`` is touched.
    """
    status = _remote_status(invoice.get("status"))
    if status and not can_advance(record.status, status):
        logger.info(
            "Ignoring stale %s payload for invoice %s (mirror is %s)",
            status.value,
            record.remote_id,
            record.status.value,
        )
        record.synced_at = datetime.now(timezone.utc)
        return False
    record.remote_id = invoice.get("id") or record.remote_id
    record.remote_customer_id = invoice.get("customer") or record.remote_customer_id
    record.invoice_number = invoice.get("number") or record.invoice_number
    record.hosted_url = invoice.get("hosted_invoice_url") or record.hosted_url
    record.invoice_pdf_url = invoice.get("invoice_pdf") or record.invoice_pdf_url
    if invoice.get("currency"):
        record.currency = str(invoice["currency"]).lower()
    if invoice.get("amount_due") is not None:
        record.amount_due = from_cents(invoice["amount_due"])
    if invoice.get("amount_paid") is not None:
        record.amount_paid = from_cents(invoice["amount_paid"])
    due_at = _from_timestamp(invoice.get("due_date"))
    if due_at:
        record.due_date = due_at.date()
    if status:
        record.status = status
    paid_at = _from_timestamp((invoice.get("status_transitions") or {}).get("paid_at"))
    if paid_at:
        record.paid_at = paid_at
    record.synced_at = datetime.now(timezone.utc)
    return True


def _validate_subject(db: Session, summary: ActivitySummary) -> Subscriber:
    subscriber = get_by_id(db, Subscriber, summary.subscriber_id)
    if not subscriber:
        raise NotFoundError("Subscriber not found")
    email = (subscriber.email or "").strip()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address for subscriber {subscriber.username}")
    total_fee = round_money(summary.total_fee)
    if total_fee < 0 or total_fee > settings.max_invoice_fee:
        raise SecurityError(f"Invalid fee amount: {total_fee}")
    if total_fee == 0:
        raise ValidationError("Nothing to invoice for this period")
    if summary.manual_review_count > summary.total_event_count:
        raise SecurityError(f"Invalid manual review count: {summary.manual_review_count}")
    return subscriber


class PaymentSync:
    @staticmethod
    def ensure_customer(
        db: Session, client: StripeClient, subscriber: Subscriber, requested_by: str
    ) -> str:
        """Return the Stripe customer id for a subscriber, creating it if needed."""
        cached = (
            db.query(ProcessorCustomer)
            .filter(ProcessorCustomer.subscriber_id == subscriber.id)
            .one_or_none()
        )
        if cached:
            return cached.remote_customer_id

        params = {
            "email": subscriber.email.strip(),
            "name": _sanitize_name(subscriber.first_name, subscriber.last_name),
            "metadata": {
                "user_id": str(subscriber.id),
                "username": USERNAME_SAFE_RE.sub("", subscriber.username or ""),
                "account_type": re.sub(r"[^a-zA-Z]", "", subscriber.account_type or ""),
                "created_by_admin": str(requested_by),
            },
        }
        existing = client.find_customer_by_email(params["email"])
        if existing:
            owner = (existing.get("metadata") or {}).get("user_id")
            if owner and str(owner) != str(subscriber.id):
                logger.warning(
                    "Stripe customer %s belongs to %s, not subscriber %s",
                    existing.get("id"),
                    owner,
                    subscriber.id,
                )
                raise SecurityError("Customer ownership mismatch")
            customer = client.update_customer(existing["id"], params)
            logger.info("Updated Stripe customer %s for subscriber %s", customer["id"], subscriber.id)
        else:
            customer = client.create_customer(params, idempotency_key=f"cus-{subscriber.id}")
            logger.info("Created Stripe customer %s for subscriber %s", customer["id"], subscriber.id)

        db.add(
            ProcessorCustomer(
                subscriber_id=subscriber.id,
                remote_customer_id=customer["id"],
                email=params["email"],
                name=params["name"] or None,
            )
        )
        db.flush()
        return customer["id"]

    @staticmethod
    def _get_or_create_record(db: Session, summary: ActivitySummary, billing_period: str):
        key = invoice_idempotency_key(
            summary.subscriber_id, summary.period_start, summary.period_end
        )
        record = (
            db.query(ExternalInvoiceRecord)
            .filter(ExternalInvoiceRecord.idempotency_key == key)
            .one_or_none()
        )
        if record:
            return record
        record = ExternalInvoiceRecord(
            subscriber_id=summary.subscriber_id,
            idempotency_key=key,
            billing_period=billing_period,
            period_start=summary.period_start,
            period_end=summary.period_end,
            currency=settings.billing_currency,
            amount_due=round_money(summary.total_fee),
            status=ExternalInvoiceStatus.draft,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            record = (
                db.query(ExternalInvoiceRecord)
                .filter(ExternalInvoiceRecord.idempotency_key == key)
                .one()
            )
        return record

    @staticmethod
    def _invoice_one(
        db: Session,
        client: StripeClient,
        summary: ActivitySummary,
        billing_period: str,
        requested_by: str,
    ) -> dict:
        subscriber = _validate_subject(db, summary)
        record = PaymentSync._get_or_create_record(db, summary, billing_period)
        # A failed run deletes its draft and clears remote_id before a retry.
        if record.remote_id:
            logger.info(
                "Invoice for subscriber %s period %s already exists (%s)",
                subscriber.id,
                billing_period,
                record.remote_id,
            )
            return PaymentSync._success(subscriber, record, reused=True)

        record_id = record.id
        keys = f"{record.idempotency_key}:{record.sync_attempt}"
        currency = settings.billing_currency
        total_cents = to_cents(summary.total_fee)
        invoice_id = None
        try:
            customer_id = PaymentSync.ensure_customer(db, client, subscriber, requested_by)
            invoice = client.create_invoice(
                {
                    "customer": customer_id,
                    "collection_method": "send_invoice",
                    "days_until_due": settings.stripe_days_until_due,
                    "currency": currency,
                    "metadata": {
                        "user_id": str(subscriber.id),
                        "billing_period": billing_period,
                        "period_start": summary.period_start.isoformat(),
                        "period_end": summary.period_end.isoformat(),
                        "total_messages": summary.total_event_count,
                        "manual_reviews": summary.manual_review_count,
                        "idempotency_key": record.idempotency_key,
                    },
                    "custom_fields": [
                        {"name": "Billing Period", "value": billing_period},
                        {"name": "Total Messages", "value": str(summary.total_event_count)},
                    ],
                },
                idempotency_key=f"{keys}:create",
            )
            invoice_id = invoice["id"]
            record.remote_id = invoice_id
            record.remote_customer_id = customer_id

            service_cents = to_cents(summary.standard_fee)
            if service_cents > 0:
                client.create_invoice_item(
                    {
                        "customer": customer_id,
                        "invoice": invoice_id,
                        "amount": service_cents,
                        "currency": currency,
                        "description": f"{settings.stripe_service_fee_description} - {billing_period}",
                        "metadata": {
                            "user_id": str(subscriber.id),
                            "message_count": summary.total_event_count,
                            "billing_period": billing_period,
                            "fee_type": "service_fee",
                        },
                    },
                    idempotency_key=f"{keys}:item:service",
                )
            # The review line takes the remainder so the lines add up to the rounded total.
            review_cents = total_cents - service_cents if summary.manual_review_fee > 0 else 0
            if review_cents > 0:
                client.create_invoice_item(
                    {
                        "customer": customer_id,
                        "invoice": invoice_id,
                        "amount": review_cents,
                        "currency": currency,
                        "description": (
                            f"{settings.stripe_manual_review_fee_description} - {billing_period}"
                        ),
                        "metadata": {
                            "user_id": str(subscriber.id),
                            "manual_review_count": summary.manual_review_count,
                            "billing_period": billing_period,
                            "fee_type": "manual_review_fee",
                        },
                    },
                    idempotency_key=f"{keys}:item:manual_review",
                )
            client.finalize_invoice(invoice_id, idempotency_key=f"{keys}:finalize")
            invoice = client.send_invoice(invoice_id, idempotency_key=f"{keys}:send")
            apply_remote_invoice(record, invoice)
            if record.status == ExternalInvoiceStatus.draft:
                record.status = ExternalInvoiceStatus.open

            bill = Bills.find_for_period(
                db, subscriber.id, summary.period_start, summary.period_end
            )
            if bill:
                record.bill_id = bill.id
                if bill.status == BillStatus.draft:
                    set_status(db, bill, BillStatus.sent, actor_id=requested_by, reason="invoice_sent")
            audit_service.record_event(
                db,
                actor_id=requested_by,
                action="external_invoice.created",
                entity_type="external_invoice",
                entity_id=record.id,
                metadata={
                    "remote_id": invoice_id,
                    "subscriber_id": subscriber.id,
                    "billing_period": billing_period,
                    "amount": round_money(summary.total_fee),
                },
            )
            db.commit()
        except (BillingError, SQLAlchemyError):
            db.rollback()
            if invoice_id:
                PaymentSync._discard_remote_draft(db, client, record_id, invoice_id)
            raise
        db.refresh(record)
        logger.info(
            "Invoiced subscriber %s for %s: %s (%s)",
            subscriber.id,
            billing_period,
            record.remote_id,
            record.amount_due,
        )
        return PaymentSync._success(subscriber, record, reused=False)

    @staticmethod
    def _discard_remote_draft(db: Session, client: StripeClient, record_id, invoice_id: str) -> None:
        try:
            client.delete_invoice(invoice_id)
        except ExternalServiceError as exc:
            logger.warning("Could not delete draft invoice %s: %s", invoice_id, exc.message)
            return
        record = db.get(ExternalInvoiceRecord, record_id)
        if record:
            record.sync_attempt = (record.sync_attempt or 0) + 1
            record.remote_id = None
            db.commit()
        logger.info("Deleted draft invoice %s after failed invoicing", invoice_id)

    @staticmethod
    def _success(subscriber: Subscriber, record: ExternalInvoiceRecord, reused: bool) -> dict:
        return {
            "subscriber_id": subscriber.id,
            "username": subscriber.username,
            "email": subscriber.email,
            "remote_invoice_id": record.remote_id,
            "remote_customer_id": record.remote_customer_id,
            "amount": round_money(record.amount_due),
            "hosted_url": record.hosted_url,
            "record_id": record.id,
            "bill_id": record.bill_id,
            "reused": reused,
        }

    @staticmethod
    def create_batch_invoices(
        db: Session,
        summaries: list[ActivitySummary],
        billing_period: str,
        requested_by: str,
        client: StripeClient,
    ) -> dict:
        """Create and send one Stripe invoice per activity summary.

        Each subscriber is handled independently: a failure is reported in
        ``errors`` and the batch carries on. Re-running a batch is safe, as
        subscribers already invoiced for the period are reported as reused.
        """
        if len(summaries) > settings.batch_invoice_limit:
            raise SecurityError(
                f"Batch size {len(summaries)} exceeds the limit of {settings.batch_invoice_limit}"
            )
        billing_period = (billing_period or "").strip()
        if not BILLING_PERIOD_RE.match(billing_period):
            raise ValidationError("Billing period must look like 'March 2026'")

        result: dict = {"success": [], "errors": [], "total_amount": Decimal("0.00")}
        for summary in summaries:
            try:
                entry = PaymentSync._invoice_one(db, client, summary, billing_period, requested_by)
            except BillingError as exc:
                db.rollback()
                logger.warning(
                    "Invoice failed for subscriber %s: %s", summary.subscriber_id, exc.message
                )
                result["errors"].append(
                    {
                        "subscriber_id": summary.subscriber_id,
                        "username": summary.username,
                        "email": summary.email,
                        "error": exc.message,
                        "code": exc.code,
                        "retryable": getattr(exc, "retryable", False),
                    }
                )
                continue
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Database error invoicing subscriber %s", summary.subscriber_id)
                result["errors"].append(
                    {
                        "subscriber_id": summary.subscriber_id,
                        "username": summary.username,
                        "email": summary.email,
                        "error": "Could not record the invoice",
                        "code": "persistence_error",
                        "retryable": True,
                    }
                )
                continue
            result["success"].append(entry)
            result["total_amount"] += entry["amount"]
        result["total_amount"] = round_money(result["total_amount"])
        logger.info(
            "Batch invoicing %s: %s succeeded, %s failed, total %s",
            billing_period,
            len(result["success"]),
            len(result["errors"]),
            result["total_amount"],
        )
        return result

    @staticmethod
    def test_connection(client: StripeClient) -> dict:
        try:
            account = client.retrieve_account()
        except ExternalServiceError as exc:
            logger.warning("Stripe connection test failed for key %s", mask_key(client.secret_key))
            return {
                "success": False,
                "error": "Could not connect to Stripe",
                "details": exc.message,
            }
        account_id = account.get("id") or ""
        return {
            "success": True,
            "account_id": f"{account_id[:12]}..." if account_id else None,
            "business_profile": account.get("business_profile") or {},
            "country": account.get("country"),
            "default_currency": account.get("default_currency"),
        }

    @staticmethod
    def refresh_invoice_status(db: Session, record_id, client: StripeClient) -> ExternalInvoiceRecord:
        """Pull the remote invoice and update the mirror (and bill) from it."""
        record = get_by_id(db, ExternalInvoiceRecord, record_id)
        if not record:
            raise NotFoundError("Invoice record not found")
        if not record.remote_id:
            raise ValidationError("Invoice has not been created at the processor yet")
        invoice = client.retrieve_invoice(record.remote_id)
        apply_remote_invoice(record, invoice)
        _sync_bill_from_record(db, record, actor_id="stripe-sync")
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def list_records(
        db: Session,
        subscriber_id: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(ExternalInvoiceRecord).options(
            selectinload(ExternalInvoiceRecord.payment_attempts)
        )
        if subscriber_id:
            query = query.filter(ExternalInvoiceRecord.subscriber_id == coerce_uuid(subscriber_id))
        if status:
            query = query.filter(
                ExternalInvoiceRecord.status
                == validate_enum(status, ExternalInvoiceStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": ExternalInvoiceRecord.created_at,
                "synced_at": ExternalInvoiceRecord.synced_at,
                "status": ExternalInvoiceRecord.status,
            },
        )
        return apply_pagination(query, limit, offset).all()


def _sync_bill_from_record(db: Session, record: ExternalInvoiceRecord, actor_id: str) -> None:
    """Move the linked bill to match the remote invoice; terminal bills stay put."""
    if not record.bill_id:
        return
    bill = Bills.get(db, record.bill_id)
    if record.status == ExternalInvoiceStatus.paid:
        paid_on = record.paid_at.date() if record.paid_at else date.today()
        set_status(
            db,
            bill,
            BillStatus.paid,
            actor_id=actor_id,
            payment_date=paid_on,
            payment_method="stripe",
            payment_reference=record.remote_id,
            reason="invoice_paid",
        )
    elif record.status == ExternalInvoiceStatus.open and bill.status == BillStatus.draft:
        set_status(db, bill, BillStatus.sent, actor_id=actor_id, reason="invoice_finalized")
    elif record.status == ExternalInvoiceStatus.void:
        set_status(db, bill, BillStatus.cancelled, actor_id=actor_id, reason="invoice_voided")
    elif record.status == ExternalInvoiceStatus.uncollectible:
        set_status(db, bill, BillStatus.overdue, actor_id=actor_id, reason="invoice_uncollectible")


class WebhookIngestion:
    @staticmethod
    def _resolve_subscriber_id(db: Session, invoice: dict):
        metadata = invoice.get("metadata") or {}
        user_id = metadata.get("user_id")
        if user_id:
            try:
                subscriber_uuid = coerce_uuid(user_id)
            except ValidationError:
                subscriber_uuid = None
            if subscriber_uuid and get_by_id(db, Subscriber, subscriber_uuid):
                return subscriber_uuid
        customer_id = invoice.get("customer")
        if customer_id:
            cached = (
                db.query(ProcessorCustomer)
                .filter(ProcessorCustomer.remote_customer_id == customer_id)
                .one_or_none()
            )
            if cached:
                return cached.subscriber_id
        return None

    @staticmethod
    def _record_for(db: Session, invoice: dict) -> ExternalInvoiceRecord | None:
        remote_id = invoice.get("id")
        if not remote_id:
            raise ValidationError("Invoice event is missing the invoice id")
        record = (
            db.query(ExternalInvoiceRecord)
            .filter(ExternalInvoiceRecord.remote_id == remote_id)
            .one_or_none()
        )
        if record:
            return record
        metadata = invoice.get("metadata") or {}
        key = metadata.get("idempotency_key")
        if key:
            record = (
                db.query(ExternalInvoiceRecord)
                .filter(ExternalInvoiceRecord.idempotency_key == key)
                .one_or_none()
            )
            if record:
                record.remote_id = remote_id
                return record

        subscriber_id = WebhookIngestion._resolve_subscriber_id(db, invoice)
        if subscriber_id is None:
            logger.warning("Invoice %s has no known subscriber; skipping", remote_id)
            return None
        period_start = _parse_date(metadata.get("period_start"))
        period_end = _parse_date(metadata.get("period_end"))
        record = ExternalInvoiceRecord(
            subscriber_id=subscriber_id,
            idempotency_key=f"wh-{remote_id}",
            remote_id=remote_id,
            billing_period=metadata.get("billing_period"),
            period_start=period_start,
            period_end=period_end,
            status=ExternalInvoiceStatus.draft,
            currency=settings.billing_currency,
        )
        if period_start and period_end:
            bill = Bills.find_for_period(db, subscriber_id, period_start, period_end)
            if bill:
                record.bill_id = bill.id
        db.add(record)
        db.flush()
        logger.info("Recorded invoice %s from webhook for subscriber %s", remote_id, subscriber_id)
        return record

    @staticmethod
    def _record_attempt(
        db: Session,
        record: ExternalInvoiceRecord,
        status: PaymentAttemptStatus,
        amount: Decimal,
        failure_reason: str | None = None,
    ) -> None:
        db.add(
            PaymentAttempt(
                external_invoice_id=record.id,
                subscriber_id=record.subscriber_id,
                status=status,
                amount=amount,
                currency=record.currency,
                failure_reason=failure_reason[:255] if failure_reason else None,
            )
        )

    @staticmethod
    def _handle_invoice(db: Session, event_type: str, invoice: dict) -> None:
        record = WebhookIngestion._record_for(db, invoice)
        if record is None:
            return
        if event_type == "invoice.payment_failed":
            error = invoice.get("last_payment_error") or {}
            reason = f"{error.get('code') or 'unknown'}: {error.get('message') or 'Payment failed'}"
            WebhookIngestion._record_attempt(
                db,
                record,
                PaymentAttemptStatus.failed,
                from_cents(invoice.get("amount_due")),
                failure_reason=reason,
            )
            record.synced_at = datetime.now(timezone.utc)
            logger.warning("Payment failed for invoice %s: %s", record.remote_id, reason)
            return

        if not apply_remote_invoice(record, invoice):
            return
        if event_type == "invoice.finalized" and record.status == ExternalInvoiceStatus.draft:
            record.status = ExternalInvoiceStatus.open
        elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
            if not can_advance(record.status, ExternalInvoiceStatus.paid):
                logger.warning(
                    "Payment event for invoice %s ignored; mirror is %s",
                    record.remote_id,
                    record.status.value,
                )
                return
            record.status = ExternalInvoiceStatus.paid
            if record.paid_at is None:
                record.paid_at = datetime.now(timezone.utc)
            already_recorded = (
                db.query(PaymentAttempt.id)
                .filter(PaymentAttempt.external_invoice_id == record.id)
                .filter(PaymentAttempt.status == PaymentAttemptStatus.succeeded)
                .first()
            )
            if not already_recorded:
                WebhookIngestion._record_attempt(
                    db, record, PaymentAttemptStatus.succeeded, round_money(record.amount_paid)
                )
        elif event_type == "invoice.voided" and can_advance(
            record.status, ExternalInvoiceStatus.void
        ):
            record.status = ExternalInvoiceStatus.void
        elif event_type == "invoice.marked_uncollectible" and can_advance(
            record.status, ExternalInvoiceStatus.uncollectible
        ):
            record.status = ExternalInvoiceStatus.uncollectible
        _sync_bill_from_record(db, record, actor_id=WEBHOOK_SOURCE)

    @staticmethod
    def _handle_customer(db: Session, event_type: str, customer: dict) -> None:
        remote_id = customer.get("id")
        cached = (
            db.query(ProcessorCustomer)
            .filter(ProcessorCustomer.remote_customer_id == remote_id)
            .one_or_none()
        )
        if event_type == "customer.deleted":
            if cached:
                db.delete(cached)
            return
        user_id = (customer.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.warning("Customer %s has no user_id metadata", remote_id)
            return
        if cached:
            cached.email = customer.get("email") or cached.email
            cached.name = customer.get("name") or cached.name
            return
        try:
            subscriber = get_by_id(db, Subscriber, user_id)
        except ValidationError:
            subscriber = None
        if not subscriber:
            logger.warning("Customer %s names unknown subscriber %s", remote_id, user_id)
            return
        existing = (
            db.query(ProcessorCustomer)
            .filter(ProcessorCustomer.subscriber_id == subscriber.id)
            .one_or_none()
        )
        if existing:
            return
        db.add(
            ProcessorCustomer(
                subscriber_id=subscriber.id,
                remote_customer_id=remote_id,
                email=customer.get("email") or subscriber.email,
                name=customer.get("name"),
            )
        )

    HANDLED_INVOICE_EVENTS = frozenset(
        {
            "invoice.created",
            "invoice.finalized",
            "invoice.paid",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
            "invoice.voided",
            "invoice.marked_uncollectible",
        }
    )
    HANDLED_CUSTOMER_EVENTS = frozenset({"customer.created", "customer.updated", "customer.deleted"})

    @staticmethod
    def _dispatch(db: Session, event_type: str, data_object: dict) -> None:
        if event_type in WebhookIngestion.HANDLED_INVOICE_EVENTS:
            WebhookIngestion._handle_invoice(db, event_type, data_object)
        elif event_type in WebhookIngestion.HANDLED_CUSTOMER_EVENTS:
            WebhookIngestion._handle_customer(db, event_type, data_object)
        else:
            logger.info("Unhandled webhook event type %s", event_type)

    @staticmethod
    def _event_row(db: Session, event: dict, event_type: str, data_object: dict) -> WebhookEvent:
        event_id = event["id"]
        row = (
            db.query(WebhookEvent)
            .filter(WebhookEvent.remote_event_id == event_id)
            .one_or_none()
        )
        if row:
            return row
        row = WebhookEvent(
            remote_event_id=event_id,
            event_type=event_type,
            object_id=data_object.get("id"),
            object_type=data_object.get("object"),
            payload=event,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            row = (
                db.query(WebhookEvent)
                .filter(WebhookEvent.remote_event_id == event_id)
                .one()
            )
        return row

    @staticmethod
    def ingest(
        db: Session,
        payload: bytes,
        signature_header: str | None,
        *,
        secret: str | None = None,
    ) -> dict:
        """Verify, record and apply one Stripe webhook delivery.

        Replays of an already processed event are acknowledged without
        touching any state. When processing fails the effects are rolled
        back and the error is kept on the event row with ``processed``
        still false, so a redelivery retries it.
        """
        verify_webhook_signature(payload, signature_header, secret)
        try:
            event = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("Webhook payload is not valid JSON") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload is missing the event id or type")
        event_type = str(event["type"])
        data_object = (event.get("data") or {}).get("object") or {}

        row = WebhookIngestion._event_row(db, event, event_type, data_object)
        row_id = row.id
        # Serialize concurrent deliveries of the same event.
        row = (
            db.query(WebhookEvent)
            .filter(WebhookEvent.id == row_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        if row.processed:
            db.rollback()
            logger.info("Webhook event %s already processed", row.remote_event_id)
            return {
                "event_id": row.remote_event_id,
                "event_type": row.event_type,
                "processed": True,
                "duplicate": True,
                "attempts": row.attempts,
            }

        try:
            row.attempts = (row.attempts or 0) + 1
            WebhookIngestion._dispatch(db, event_type, data_object)
            row.processed = True
            row.processed_at = datetime.now(timezone.utc)
            row.last_error = None
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("Webhook event %s (%s) failed", event["id"], event_type)
            row = db.get(WebhookEvent, row_id)
            row.attempts = (row.attempts or 0) + 1
            row.last_error = f"{type(exc).__name__}: {exc}"[:2000]
            db.commit()
            return {
                "event_id": row.remote_event_id,
                "event_type": event_type,
                "processed": False,
                "attempts": row.attempts,
                "error": row.last_error,
            }
        logger.info("Processed webhook event %s (%s)", row.remote_event_id, event_type)
        return {
            "event_id": row.remote_event_id,
            "event_type": event_type,
            "processed": True,
            "attempts": row.attempts,
        }

    @staticmethod
    def cleanup(db: Session, keep_days: int = 30) -> int:
        """Delete processed events older than ``keep_days``; unprocessed ones are kept."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        deleted = (
            db.query(WebhookEvent)
            .filter(WebhookEvent.processed.is_(True))
            .filter(WebhookEvent.received_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Removed %s webhook events older than %s days", deleted, keep_days)
        return deleted

    @staticmethod
    def list_events(
        db: Session,
        processed: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(WebhookEvent)
        if processed is not None:
            query = query.filter(WebhookEvent.processed == processed)
        query = query.order_by(WebhookEvent.received_at.desc())
        return apply_pagination(query, limit, offset).all()
