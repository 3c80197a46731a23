"""Bill ledger: creation, status changes, credits and deletion."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models.billing import (
    TERMINAL_BILL_STATUSES,
    Bill,
    BillCredit,
    BillStatus,
    ExternalInvoiceRecord,
)
from app.models.subscriber import Subscriber
from app.schemas.billing import ActivitySummary, BillCreate, BillStatusUpdate, CreditApply
from app.services import audit as audit_service
from app.services.billing.activity import ActivityAggregator
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    list_response,
    round_money,
    validate_enum,
)

logger = logging.getLogger(__name__)

PAYMENT_FIELDS = ("payment_date", "payment_method", "payment_reference")
INITIAL_STATUSES = frozenset({BillStatus.draft, BillStatus.sent})


def amount_due(bill: Bill) -> Decimal:
    """Amount still owed once account credit is taken off; never negative."""
    return round_money(bill.amount_due)


def lock_bill(db: Session, bill_id) -> Bill:
    """Load a bill with a row lock for a read-modify-write."""
    bill = (
        db.query(Bill)
        .filter(Bill.id == coerce_uuid(bill_id))
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if not bill:
        raise NotFoundError("Bill not found")
    return bill


def _commit(db: Session, bill: Bill, action: str) -> Bill:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent update on bill %s during %s", bill.id, action)
        raise ConflictError("Bill was modified concurrently; reload and retry") from exc
    db.refresh(bill)
    return bill


def _append_note(existing: str | None, line: str) -> str:
    if not existing:
        return line
    return f"{existing}\n{line}"


def _validate_amount(summary: ActivitySummary, custom_amount: Decimal | None) -> Decimal:
    minimum = settings.minimum_bill_amount
    total_fee = round_money(summary.total_fee)
    if custom_amount is None:
        if total_fee < minimum:
            raise ValidationError(
                f"Activity total {total_fee} is below the minimum bill amount {minimum}"
            )
        return total_fee
    amount = round_money(custom_amount)
    if amount < minimum:
        raise ValidationError(f"Custom amount must be at least {minimum}")
    if amount > total_fee:
        raise ValidationError(
            f"Custom amount {amount} exceeds the activity total {total_fee}"
        )
    return amount


def set_status(
    db: Session,
    bill: Bill,
    new_status: BillStatus,
    *,
    actor_id: str,
    payment_date: date | None = None,
    payment_method: str | None = None,
    payment_reference: str | None = None,
    reason: str | None = None,
) -> bool:
    """Automated status change used by invoicing and webhooks (no commit).

    Terminal bills (paid, cancelled) are left alone. Returns whether the
    bill changed.
    """
    if bill.status in TERMINAL_BILL_STATUSES or bill.status == new_status:
        return False
    previous = bill.status
    bill.status = new_status
    if new_status == BillStatus.paid:
        bill.payment_date = payment_date or date.today()
        bill.payment_method = payment_method
        bill.payment_reference = payment_reference
    audit_service.record_event(
        db,
        actor_id=actor_id,
        action="bill.status_changed",
        entity_type="bill",
        entity_id=bill.id,
        metadata={"from": previous, "to": new_status, "reason": reason},
    )
    logger.info("Bill %s moved %s -> %s (%s)", bill.id, previous.value, new_status.value, reason)
    return True


class Bills:
    @staticmethod
    def create(
        db: Session,
        payload: BillCreate,
        created_by: str,
        summary: ActivitySummary | None = None,
        status: BillStatus = BillStatus.draft,
    ) -> Bill:
        subscriber = get_by_id(db, Subscriber, payload.subscriber_id)
        if not subscriber:
            raise NotFoundError("Subscriber not found")
        status = validate_enum(status, BillStatus, "status")
        if status not in INITIAL_STATUSES:
            raise ValidationError("A new bill must start as draft or sent")
        if summary is None:
            summary = ActivityAggregator.for_subscriber(
                db, payload.subscriber_id, payload.period_start, payload.period_end
            )
            if summary is None:
                raise ValidationError("No billable activity for this subscriber and period")
        if (
            summary.subscriber_id != payload.subscriber_id
            or summary.period_start != payload.period_start
            or summary.period_end != payload.period_end
        ):
            raise ValidationError("Activity summary does not match the bill subscriber or period")

        existing = (
            db.query(Bill.id)
            .filter(Bill.subscriber_id == payload.subscriber_id)
            .filter(Bill.period_start == payload.period_start)
            .filter(Bill.period_end == payload.period_end)
            .first()
        )
        if existing:
            raise ConflictError("A bill already exists for this subscriber and period")

        amount = _validate_amount(summary, payload.custom_amount)
        bill = Bill(
            subscriber_id=payload.subscriber_id,
            period_start=payload.period_start,
            period_end=payload.period_end,
            total_event_count=summary.total_event_count,
            manual_review_count=summary.manual_review_count,
            standard_fee=summary.standard_fee,
            manual_review_fee=summary.manual_review_fee,
            activity_total=round_money(summary.total_fee),
            amount=amount,
            is_custom_amount=payload.custom_amount is not None,
            currency=settings.billing_currency,
            status=status,
            account_credit=Decimal("0.00"),
            due_date=payload.due_date
            or payload.period_end + timedelta(days=settings.bill_due_days),
            notes=payload.notes,
            created_by=str(created_by),
        )
        db.add(bill)
        try:
            db.flush()
            audit_service.record_event(
                db,
                actor_id=created_by,
                action="bill.created",
                entity_type="bill",
                entity_id=bill.id,
                metadata={
                    "subscriber_id": bill.subscriber_id,
                    "amount": amount,
                    "custom_amount": bill.is_custom_amount,
                },
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("A bill already exists for this subscriber and period") from exc
        db.refresh(bill)
        logger.info(
            "Created bill %s for subscriber %s amount=%s", bill.id, bill.subscriber_id, amount
        )
        return bill

    @staticmethod
    def get(db: Session, bill_id) -> Bill:
        bill = get_by_id(
            db,
            Bill,
            bill_id,
            options=[selectinload(Bill.attachments), selectinload(Bill.credits)],
        )
        if not bill:
            raise NotFoundError("Bill not found")
        return bill

    @staticmethod
    def list(
        db: Session,
        subscriber_id: str | None = None,
        status: str | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Bill).options(
            selectinload(Bill.attachments), selectinload(Bill.credits)
        )
        if subscriber_id:
            query = query.filter(Bill.subscriber_id == coerce_uuid(subscriber_id))
        if status:
            query = query.filter(Bill.status == validate_enum(status, BillStatus, "status"))
        if period_start:
            query = query.filter(Bill.period_start >= period_start)
        if period_end:
            query = query.filter(Bill.period_end <= period_end)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Bill.created_at,
                "period_start": Bill.period_start,
                "amount": Bill.amount,
                "status": Bill.status,
                "due_date": Bill.due_date,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @classmethod
    def list_response(cls, db: Session, *args, limit: int = 50, offset: int = 0, **kwargs):
        items = cls.list(db, *args, limit=limit, offset=offset, **kwargs)
        return list_response(items, limit, offset)

    @staticmethod
    def update_status(db: Session, bill_id, payload: BillStatusUpdate, updated_by: str) -> Bill:
        """Admin status change; any status may move to any other.

        Payment details are only accepted together with ``paid``. Leaving
        ``paid`` clears them.
        """
        fields_set = payload.model_fields_set
        supplied_payment = [
            name for name in PAYMENT_FIELDS
            if name in fields_set and getattr(payload, name) is not None
        ]
        if supplied_payment and payload.status != BillStatus.paid:
            raise ValidationError(
                "Payment details can only be recorded when the status is paid",
                details={"fields": supplied_payment},
            )

        bill = lock_bill(db, bill_id)
        previous = bill.status
        bill.status = payload.status
        if payload.status == BillStatus.paid:
            for name in PAYMENT_FIELDS:
                if name in fields_set:
                    setattr(bill, name, getattr(payload, name))
            if bill.payment_date is None:
                bill.payment_date = date.today()
        elif previous == BillStatus.paid:
            for name in PAYMENT_FIELDS:
                setattr(bill, name, None)
        if "notes" in fields_set:
            bill.notes = payload.notes
        if "due_date" in fields_set:
            bill.due_date = payload.due_date

        audit_service.record_event(
            db,
            actor_id=updated_by,
            action="bill.status_changed",
            entity_type="bill",
            entity_id=bill.id,
            metadata={
                "from": previous,
                "to": payload.status,
                "payment_method": bill.payment_method,
                "payment_reference": bill.payment_reference,
            },
        )
        bill = _commit(db, bill, "update_status")
        logger.info(
            "Bill %s status %s -> %s by %s",
            bill.id,
            previous.value,
            payload.status.value,
            updated_by,
        )
        return bill

    @staticmethod
    def apply_credit(db: Session, bill_id, payload: CreditApply, applied_by: str) -> Bill:
        amount = round_money(payload.amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be greater than zero")
        reason = payload.reason.strip()
        if not reason:
            raise ValidationError("A reason is required to apply credit")

        bill = lock_bill(db, bill_id)
        bill.account_credit = round_money((bill.account_credit or 0) + amount)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        bill.notes = _append_note(
            bill.notes, f"Credit applied: ${amount} - {reason} ({timestamp})"
        )
        db.add(BillCredit(bill_id=bill.id, amount=amount, reason=reason, applied_by=str(applied_by)))
        audit_service.record_event(
            db,
            actor_id=applied_by,
            action="bill.credit_applied",
            entity_type="bill",
            entity_id=bill.id,
            metadata={"amount": amount, "reason": reason, "total_credit": bill.account_credit},
        )
        bill = _commit(db, bill, "apply_credit")
        logger.info("Applied credit %s to bill %s (total %s)", amount, bill.id, bill.account_credit)
        return bill

    @staticmethod
    def delete(db: Session, bill_id, requested_by: str) -> None:
        """Hard-delete a bill with its attachments and credit history.

        External invoice records are kept and detached.
        """
        bill = lock_bill(db, bill_id)
        db.query(ExternalInvoiceRecord).filter(ExternalInvoiceRecord.bill_id == bill.id).update(
            {ExternalInvoiceRecord.bill_id: None}, synchronize_session=False
        )
        audit_service.record_event(
            db,
            actor_id=requested_by,
            action="bill.deleted",
            entity_type="bill",
            entity_id=bill.id,
            metadata={
                "subscriber_id": bill.subscriber_id,
                "period_start": bill.period_start,
                "period_end": bill.period_end,
                "amount": bill.amount,
                "status": bill.status,
            },
        )
        db.delete(bill)
        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise ConflictError("Bill was modified concurrently; reload and retry") from exc
        logger.info("Deleted bill %s by %s", bill_id, requested_by)

    @staticmethod
    def amount_due(bill: Bill) -> Decimal:
        return amount_due(bill)

    @staticmethod
    def find_for_period(db: Session, subscriber_id, period_start: date, period_end: date) -> Bill | None:
        return (
            db.query(Bill)
            .filter(Bill.subscriber_id == coerce_uuid(subscriber_id))
            .filter(Bill.period_start == period_start)
            .filter(Bill.period_end == period_end)
            .one_or_none()
        )

    @staticmethod
    def stats(db: Session, subscriber_id) -> dict:
        subscriber_uuid = coerce_uuid(subscriber_id)
        if not get_by_id(db, Subscriber, subscriber_uuid):
            raise NotFoundError("Subscriber not found")
        zero = Decimal("0.00")

        def _sum_when(*statuses):
            return func.coalesce(
                func.sum(case((Bill.status.in_(statuses), Bill.amount), else_=0)), 0
            )

        row = (
            db.query(
                func.count(Bill.id),
                func.coalesce(func.sum(Bill.amount), 0),
                func.coalesce(func.sum(Bill.account_credit), 0),
                _sum_when(BillStatus.paid),
                _sum_when(BillStatus.overdue),
                _sum_when(BillStatus.draft, BillStatus.sent),
            )
            .filter(Bill.subscriber_id == subscriber_uuid)
            .one()
        )
        return {
            "subscriber_id": subscriber_uuid,
            "bill_count": int(row[0] or 0),
            "total_billed": round_money(row[1] or zero),
            "total_credits": round_money(row[2] or zero),
            "total_paid": round_money(row[3] or zero),
            "total_overdue": round_money(row[4] or zero),
            "total_outstanding": round_money(row[5] or zero),
        }
