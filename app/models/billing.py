import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class BillStatus(enum.Enum):
    draft = "draft"
    sent = "sent"
    overdue = "overdue"
    paid = "paid"
    cancelled = "cancelled"


TERMINAL_BILL_STATUSES = frozenset({BillStatus.paid, BillStatus.cancelled})


class InvoiceType(enum.Enum):
    generated = "generated"
    payment_receipt = "payment_receipt"
    credit_note = "credit_note"


class ExternalInvoiceStatus(enum.Enum):
    draft = "draft"
    open = "open"
    paid = "paid"
    void = "void"
    uncollectible = "uncollectible"


class PaymentAttemptStatus(enum.Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (
        UniqueConstraint(
            "subscriber_id",
            "period_start",
            "period_end",
            name="uq_bills_subscriber_period",
        ),
        CheckConstraint("account_credit >= 0", name="ck_bills_credit_non_negative"),
        CheckConstraint("amount >= 0", name="ck_bills_amount_non_negative"),
        Index("ix_bills_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscribers.id"), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # Snapshot of the activity the bill was raised from.
    total_event_count: Mapped[int] = mapped_column(Integer, default=0)
    manual_review_count: Mapped[int] = mapped_column(Integer, default=0)
    standard_fee: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    manual_review_fee: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    activity_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_custom_amount: Mapped[bool] = mapped_column(Boolean, default=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    status: Mapped[BillStatus] = mapped_column(Enum(BillStatus), default=BillStatus.draft)
    account_credit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    due_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)

    payment_date: Mapped[date | None] = mapped_column(Date)
    payment_method: Mapped[str | None] = mapped_column(String(40))
    payment_reference: Mapped[str | None] = mapped_column(String(160))

    created_by: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    subscriber = relationship("Subscriber", back_populates="bills")
    attachments = relationship(
        "InvoiceAttachment",
        back_populates="bill",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InvoiceAttachment.created_at",
    )
    credits = relationship(
        "BillCredit",
        back_populates="bill",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BillCredit.created_at",
    )
    external_invoices = relationship("ExternalInvoiceRecord", back_populates="bill")

    @property
    def amount_due(self) -> Decimal:
        due = Decimal(self.amount or 0) - Decimal(self.account_credit or 0)
        return max(Decimal("0.00"), due)

    @property
    def primary_attachment(self):
        for attachment in self.attachments:
            if attachment.is_primary:
                return attachment
        return None


class BillCredit(Base):
    """Append-only history of account credits applied to a bill."""

    __tablename__ = "bill_credits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bills.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    applied_by: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    bill = relationship("Bill", back_populates="credits")


class InvoiceAttachment(Base):
    __tablename__ = "invoice_attachments"
    __table_args__ = (
        UniqueConstraint("document_id", name="uq_invoice_attachments_document"),
        Index(
            "uq_invoice_attachments_primary",
            "bill_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bills.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("stored_files.id"), nullable=False
    )
    invoice_type: Mapped[InvoiceType] = mapped_column(
        Enum(InvoiceType), default=InvoiceType.generated
    )
    invoice_number: Mapped[str | None] = mapped_column(String(100))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    uploaded_by: Mapped[str | None] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    bill = relationship("Bill", back_populates="attachments")
    document = relationship("StoredFile")


class ProcessorCustomer(Base):
    """Local cache of the processor-side customer for a subscriber."""

    __tablename__ = "processor_customers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscribers.id"), nullable=False, unique=True
    )
    remote_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ExternalInvoiceRecord(Base):
    """Mirror of a remote (processor) invoice."""

    __tablename__ = "external_invoice_records"
    __table_args__ = (
        Index("ix_external_invoice_records_subscriber", "subscriber_id"),
        Index("ix_external_invoice_records_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bill_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bills.id", ondelete="SET NULL")
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscribers.id"), nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    # Bumped when a failed attempt's remote draft was cleaned up.
    sync_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[date | None] = mapped_column(Date)
    period_end: Mapped[date | None] = mapped_column(Date)
    remote_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    remote_customer_id: Mapped[str | None] = mapped_column(String(255))
    invoice_number: Mapped[str | None] = mapped_column(String(100))
    billing_period: Mapped[str | None] = mapped_column(String(50))
    hosted_url: Mapped[str | None] = mapped_column(Text)
    invoice_pdf_url: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ExternalInvoiceStatus] = mapped_column(
        Enum(ExternalInvoiceStatus), default=ExternalInvoiceStatus.draft
    )
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    amount_due: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    due_date: Mapped[date | None] = mapped_column(Date)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    bill = relationship("Bill", back_populates="external_invoices")
    payment_attempts = relationship(
        "PaymentAttempt", back_populates="external_invoice", order_by="PaymentAttempt.created_at"
    )


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("external_invoice_records.id"), nullable=False
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscribers.id"), nullable=False
    )
    status: Mapped[PaymentAttemptStatus] = mapped_column(Enum(PaymentAttemptStatus))
    attempt_type: Mapped[str] = mapped_column(String(20), default="automatic")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    failure_reason: Mapped[str | None] = mapped_column(String(255))
    payment_method_type: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    external_invoice = relationship("ExternalInvoiceRecord", back_populates="payment_attempts")


class WebhookEvent(Base):
    """Processing ledger for inbound processor webhooks."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_processed", "processed"),
        Index("ix_webhook_events_object_id", "object_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    remote_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(255))
    object_type: Mapped[str | None] = mapped_column(String(50))
    payload: Mapped[dict | None] = mapped_column(JSON)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
