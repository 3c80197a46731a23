from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.billing import (
    BillStatus,
    ExternalInvoiceStatus,
    InvoiceType,
    PaymentAttemptStatus,
)


class ActivitySummary(BaseModel):
    """Per-subscriber billable activity for a period; an immutable snapshot."""

    model_config = ConfigDict(frozen=True)

    subscriber_id: UUID
    username: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    account_type: str | None = None
    period_start: date
    period_end: date
    total_event_count: int = Field(ge=0)
    standard_event_count: int = Field(ge=0)
    manual_review_count: int = Field(ge=0)
    standard_fee: Decimal
    manual_review_fee: Decimal
    total_fee: Decimal
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None
    manual_review_reasons: list[str] = Field(default_factory=list)


class BillCreate(BaseModel):
    subscriber_id: UUID
    period_start: date
    period_end: date
    custom_amount: Decimal | None = None
    due_date: date | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _validate_period(self) -> "BillCreate":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class BillStatusUpdate(BaseModel):
    status: BillStatus
    payment_date: date | None = None
    payment_method: str | None = Field(default=None, max_length=40)
    payment_reference: str | None = Field(default=None, max_length=160)
    notes: str | None = None
    due_date: date | None = None


class CreditApply(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)


class BillCreditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    reason: str
    applied_by: str
    created_at: datetime


class InvoiceAttachmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    bill_id: UUID
    document_id: UUID
    invoice_type: InvoiceType
    invoice_number: str | None = None
    amount: Decimal
    is_primary: bool
    uploaded_by: str | None = None
    created_at: datetime


class LinkDocumentRequest(BaseModel):
    document_id: UUID
    invoice_type: InvoiceType = InvoiceType.generated
    invoice_number: str | None = Field(default=None, max_length=100)
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    is_primary: bool = False


class BillRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscriber_id: UUID
    period_start: date
    period_end: date
    total_event_count: int
    manual_review_count: int
    standard_fee: Decimal
    manual_review_fee: Decimal
    activity_total: Decimal
    amount: Decimal
    is_custom_amount: bool
    currency: str
    status: BillStatus
    account_credit: Decimal
    amount_due: Decimal | None = None
    due_date: date | None = None
    notes: str | None = None
    payment_date: date | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    attachments: list[InvoiceAttachmentRead] = Field(default_factory=list)
    credits: list[BillCreditRead] = Field(default_factory=list)


class BillStats(BaseModel):
    subscriber_id: UUID
    bill_count: int = 0
    total_billed: Decimal = Decimal("0.00")
    total_credits: Decimal = Decimal("0.00")
    total_paid: Decimal = Decimal("0.00")
    total_overdue: Decimal = Decimal("0.00")
    total_outstanding: Decimal = Decimal("0.00")


class BatchInvoiceRequest(BaseModel):
    period_start: date
    period_end: date
    billing_period: str = Field(min_length=1, max_length=50)
    subscriber_ids: list[UUID] | None = None


class BatchInvoiceSuccess(BaseModel):
    subscriber_id: UUID
    username: str | None = None
    email: str | None = None
    remote_invoice_id: str
    remote_customer_id: str | None = None
    amount: Decimal
    hosted_url: str | None = None
    record_id: UUID
    bill_id: UUID | None = None
    reused: bool = False


class BatchInvoiceError(BaseModel):
    subscriber_id: UUID
    username: str | None = None
    email: str | None = None
    error: str
    code: str
    retryable: bool = False


class BatchInvoiceResult(BaseModel):
    success: list[BatchInvoiceSuccess] = Field(default_factory=list)
    errors: list[BatchInvoiceError] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")


class ConnectionTestResult(BaseModel):
    success: bool
    account_id: str | None = None
    business_profile: dict | None = None
    country: str | None = None
    default_currency: str | None = None
    error: str | None = None
    details: str | None = None


class PaymentAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_invoice_id: UUID
    status: PaymentAttemptStatus
    amount: Decimal
    currency: str
    failure_reason: str | None = None
    created_at: datetime


class ExternalInvoiceRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    bill_id: UUID | None = None
    subscriber_id: UUID
    remote_id: str | None = None
    remote_customer_id: str | None = None
    invoice_number: str | None = None
    billing_period: str | None = None
    hosted_url: str | None = None
    invoice_pdf_url: str | None = None
    status: ExternalInvoiceStatus
    currency: str
    amount_due: Decimal
    amount_paid: Decimal
    due_date: date | None = None
    paid_at: datetime | None = None
    synced_at: datetime | None = None
    payment_attempts: list[PaymentAttemptRead] = Field(default_factory=list)


class WebhookIngestResult(BaseModel):
    event_id: str
    event_type: str
    processed: bool
    duplicate: bool = False
    attempts: int = 0
    error: str | None = None
