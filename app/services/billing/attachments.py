"""Invoice documents attached to bills, with one primary per bill."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from pathlib import Path

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ConflictError, NotFoundError, ValidationError
from app.models.billing import Bill, InvoiceAttachment, InvoiceType
from app.services import audit as audit_service
from app.services.billing.bills import lock_bill
from app.services.common import coerce_uuid, get_by_id, round_money, validate_enum
from app.services.file_storage import LocalDocumentStore, document_store

logger = logging.getLogger(__name__)


def _invoice_number_from(filename: str | None) -> str | None:
    if not filename:
        return None
    stem = Path(filename).stem.strip()
    return stem[:100] or None


def _clear_primary(db: Session, bill_id, keep_id=None) -> None:
    query = (
        db.query(InvoiceAttachment)
        .filter(InvoiceAttachment.bill_id == bill_id)
        .filter(InvoiceAttachment.is_primary.is_(True))
    )
    if keep_id is not None:
        query = query.filter(InvoiceAttachment.id != keep_id)
    query.update({InvoiceAttachment.is_primary: False}, synchronize_session="fetch")


def _normalize_amount(amount) -> Decimal:
    value = round_money(amount if amount is not None else 0)
    if value < 0:
        raise ValidationError("Invoice amount cannot be negative")
    return value


def _ensure_unlinked(db: Session, document_id, bill_id) -> None:
    existing = (
        db.query(InvoiceAttachment)
        .filter(InvoiceAttachment.document_id == document_id)
        .first()
    )
    if not existing:
        return
    if existing.bill_id == bill_id:
        raise ConflictError("Document is already attached to this bill")
    raise ConflictError(
        "Document is already linked to another bill",
        details={"bill_id": str(existing.bill_id)},
    )


def _add_attachment(
    db: Session,
    bill: Bill,
    *,
    document_id,
    invoice_type: InvoiceType,
    invoice_number: str | None,
    amount: Decimal,
    is_primary: bool,
    actor_id: str,
    action: str,
) -> InvoiceAttachment:
    if is_primary:
        _clear_primary(db, bill.id)
    attachment = InvoiceAttachment(
        bill_id=bill.id,
        document_id=document_id,
        invoice_type=invoice_type,
        invoice_number=invoice_number,
        amount=amount,
        is_primary=is_primary,
        uploaded_by=str(actor_id),
    )
    db.add(attachment)
    db.flush()
    audit_service.record_event(
        db,
        actor_id=actor_id,
        action=action,
        entity_type="bill",
        entity_id=bill.id,
        metadata={
            "attachment_id": attachment.id,
            "document_id": document_id,
            "invoice_type": invoice_type,
            "is_primary": is_primary,
        },
    )
    return attachment


class InvoiceAttachments:
    @staticmethod
    def attach_uploaded_document(
        db: Session,
        bill_id,
        *,
        filename: str,
        content: bytes,
        content_type: str | None,
        uploaded_by: str,
        invoice_type: InvoiceType | str = InvoiceType.generated,
        invoice_number: str | None = None,
        amount: Decimal | None = None,
        is_primary: bool = False,
        store: LocalDocumentStore | None = None,
    ) -> InvoiceAttachment:
        store = store or document_store
        invoice_type = validate_enum(invoice_type, InvoiceType, "invoice_type")
        amount = _normalize_amount(amount)
        bill = lock_bill(db, bill_id)
        document = None
        try:
            document = store.store(
                db,
                content,
                filename=filename,
                content_type=content_type,
                subscriber_id=bill.subscriber_id,
                uploaded_by=uploaded_by,
                description=f"Invoice for bill {bill.id}",
                commit=False,
            )
            attachment = _add_attachment(
                db,
                bill,
                document_id=document.id,
                invoice_type=invoice_type,
                invoice_number=invoice_number or _invoice_number_from(document.original_filename),
                amount=amount,
                is_primary=is_primary,
                actor_id=uploaded_by,
                action="bill.invoice_uploaded",
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if document is not None:
                store.discard(document)
            raise ConflictError("Another primary invoice was set concurrently") from exc
        except Exception:
            db.rollback()
            if document is not None:
                store.discard(document)
            raise
        db.refresh(attachment)
        logger.info(
            "Attached uploaded invoice %s to bill %s primary=%s",
            attachment.id,
            bill_id,
            is_primary,
        )
        return attachment

    @staticmethod
    def link_existing_document(
        db: Session,
        bill_id,
        document_id,
        *,
        linked_by: str,
        invoice_type: InvoiceType | str = InvoiceType.generated,
        invoice_number: str | None = None,
        amount: Decimal | None = None,
        is_primary: bool = False,
        store: LocalDocumentStore | None = None,
    ) -> InvoiceAttachment:
        store = store or document_store
        invoice_type = validate_enum(invoice_type, InvoiceType, "invoice_type")
        amount = _normalize_amount(amount)
        document_uuid = coerce_uuid(document_id)
        bill = lock_bill(db, bill_id)
        try:
            document = store.get(db, document_uuid)
            if document.subscriber_id != bill.subscriber_id:
                raise NotFoundError("Document not found for this subscriber")
            _ensure_unlinked(db, document_uuid, bill.id)
            attachment = _add_attachment(
                db,
                bill,
                document_id=document_uuid,
                invoice_type=invoice_type,
                invoice_number=invoice_number or _invoice_number_from(document.original_filename),
                amount=amount,
                is_primary=is_primary,
                actor_id=linked_by,
                action="bill.invoice_linked",
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("Document or primary flag was changed concurrently") from exc
        except Exception:
            db.rollback()
            raise
        db.refresh(attachment)
        logger.info("Linked document %s to bill %s", document_uuid, bill_id)
        return attachment

    @staticmethod
    def set_primary(db: Session, attachment_id, actor_id: str) -> InvoiceAttachment:
        attachment = get_by_id(db, InvoiceAttachment, attachment_id)
        if not attachment:
            raise NotFoundError("Invoice attachment not found")
        bill = lock_bill(db, attachment.bill_id)
        if attachment.is_primary:
            db.rollback()
            return attachment
        try:
            _clear_primary(db, bill.id, keep_id=attachment.id)
            attachment.is_primary = True
            audit_service.record_event(
                db,
                actor_id=actor_id,
                action="bill.primary_invoice_set",
                entity_type="bill",
                entity_id=bill.id,
                metadata={"attachment_id": attachment.id},
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("Another primary invoice was set concurrently") from exc
        db.refresh(attachment)
        return attachment

    @staticmethod
    def unlink(db: Session, attachment_id, actor_id: str) -> None:
        """Remove an attachment; the stored document itself is kept."""
        attachment = get_by_id(db, InvoiceAttachment, attachment_id)
        if not attachment:
            raise NotFoundError("Invoice attachment not found")
        bill = lock_bill(db, attachment.bill_id)
        audit_service.record_event(
            db,
            actor_id=actor_id,
            action="bill.invoice_unlinked",
            entity_type="bill",
            entity_id=bill.id,
            metadata={"attachment_id": attachment.id, "document_id": attachment.document_id},
        )
        db.delete(attachment)
        db.commit()
        logger.info("Unlinked attachment %s from bill %s", attachment_id, bill.id)

    @staticmethod
    def list_for_bill(db: Session, bill_id) -> list[InvoiceAttachment]:
        bill_uuid = coerce_uuid(bill_id)
        if not get_by_id(db, Bill, bill_uuid):
            raise NotFoundError("Bill not found")
        return (
            db.query(InvoiceAttachment)
            .filter(InvoiceAttachment.bill_id == bill_uuid)
            .order_by(InvoiceAttachment.is_primary.desc(), InvoiceAttachment.created_at.asc())
            .all()
        )

    @staticmethod
    def invoiced_amount_for_period(
        db: Session, subscriber_id, period_start: date, period_end: date
    ) -> Decimal:
        """Sum of generated invoice amounts on the subscriber's bills in the period."""
        total = (
            db.query(func.coalesce(func.sum(InvoiceAttachment.amount), 0))
            .join(Bill, Bill.id == InvoiceAttachment.bill_id)
            .filter(Bill.subscriber_id == coerce_uuid(subscriber_id))
            .filter(Bill.period_start >= period_start)
            .filter(Bill.period_end <= period_end)
            .filter(InvoiceAttachment.invoice_type == InvoiceType.generated)
            .scalar()
        )
        return round_money(total or 0)

    @staticmethod
    def linked_document_ids(db: Session, subscriber_id) -> list:
        rows = (
            db.query(InvoiceAttachment.document_id)
            .join(Bill, Bill.id == InvoiceAttachment.bill_id)
            .filter(Bill.subscriber_id == coerce_uuid(subscriber_id))
            .all()
        )
        return [row[0] for row in rows]
