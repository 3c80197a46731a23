"""initial billing schema

Revision ID: a1c3e5f7b9d1
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d1"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

bill_status = sa.Enum("draft", "sent", "overdue", "paid", "cancelled", name="billstatus")
invoice_type = sa.Enum("generated", "payment_receipt", "credit_note", name="invoicetype")
external_invoice_status = sa.Enum(
    "draft", "open", "paid", "void", "uncollectible", name="externalinvoicestatus"
)
payment_attempt_status = sa.Enum("pending", "succeeded", "failed", name="paymentattemptstatus")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "subscribers",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("username", sa.String(80), nullable=False, unique=True),
        sa.Column("first_name", sa.String(80)),
        sa.Column("last_name", sa.String(80)),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("account_type", sa.String(40)),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", sa.Uuid(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("subject", sa.String(255)),
        sa.Column("manual_review", sa.Boolean, server_default=sa.false()),
        sa.Column("manual_review_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_created_at", "messages", ["created_at"])
    op.create_table(
        "stored_files",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", sa.Uuid(as_uuid=True), sa.ForeignKey("subscribers.id")),
        sa.Column("category", sa.String(60), nullable=False, server_default="invoice"),
        sa.Column("description", sa.String(255)),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=False),
        sa.Column("file_size", sa.Integer, nullable=False),
        sa.Column("content_type", sa.String(255)),
        sa.Column("checksum", sa.String(64)),
        sa.Column("uploaded_by", sa.String(120)),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_stored_files_subscriber_active", "stored_files", ["subscriber_id", "is_deleted"]
    )
    op.create_table(
        "bills",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", sa.Uuid(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("total_event_count", sa.Integer, server_default="0"),
        sa.Column("manual_review_count", sa.Integer, server_default="0"),
        sa.Column("standard_fee", sa.Numeric(12, 4), server_default="0"),
        sa.Column("manual_review_fee", sa.Numeric(12, 4), server_default="0"),
        sa.Column("activity_total", sa.Numeric(12, 2), server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_custom_amount", sa.Boolean, server_default=sa.false()),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", bill_status, server_default="draft"),
        sa.Column("account_credit", sa.Numeric(12, 2), server_default="0"),
        sa.Column("due_date", sa.Date),
        sa.Column("notes", sa.Text),
        sa.Column("payment_date", sa.Date),
        sa.Column("payment_method", sa.String(40)),
        sa.Column("payment_reference", sa.String(160)),
        sa.Column("created_by", sa.String(120), nullable=False),
        *_timestamps(),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.UniqueConstraint(
            "subscriber_id", "period_start", "period_end", name="uq_bills_subscriber_period"
        ),
        sa.CheckConstraint("account_credit >= 0", name="ck_bills_credit_non_negative"),
        sa.CheckConstraint("amount >= 0", name="ck_bills_amount_non_negative"),
    )
    op.create_index("ix_bills_status", "bills", ["status"])
    op.create_table(
        "bill_credits",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "bill_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("bills.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("applied_by", sa.String(120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "invoice_attachments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "bill_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("bills.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("document_id", sa.Uuid(as_uuid=True), sa.ForeignKey("stored_files.id"), nullable=False),
        sa.Column("invoice_type", invoice_type, server_default="generated"),
        sa.Column("invoice_number", sa.String(100)),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("uploaded_by", sa.String(120)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("document_id", name="uq_invoice_attachments_document"),
    )
    op.create_index(
        "uq_invoice_attachments_primary",
        "invoice_attachments",
        ["bill_id"],
        unique=True,
        postgresql_where=sa.text("is_primary"),
        sqlite_where=sa.text("is_primary"),
    )
    op.create_table(
        "processor_customers",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("subscribers.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("remote_customer_id", sa.String(255), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255)),
        *_timestamps(),
    )
    op.create_table(
        "external_invoice_records",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("bill_id", sa.Uuid(as_uuid=True), sa.ForeignKey("bills.id", ondelete="SET NULL")),
        sa.Column("subscriber_id", sa.Uuid(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("idempotency_key", sa.String(120), nullable=False, unique=True),
        sa.Column("sync_attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("period_start", sa.Date),
        sa.Column("period_end", sa.Date),
        sa.Column("remote_id", sa.String(255), unique=True),
        sa.Column("remote_customer_id", sa.String(255)),
        sa.Column("invoice_number", sa.String(100)),
        sa.Column("billing_period", sa.String(50)),
        sa.Column("hosted_url", sa.Text),
        sa.Column("invoice_pdf_url", sa.Text),
        sa.Column("status", external_invoice_status, server_default="draft"),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("amount_due", sa.Numeric(12, 2), server_default="0"),
        sa.Column("amount_paid", sa.Numeric(12, 2), server_default="0"),
        sa.Column("due_date", sa.Date),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("synced_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_external_invoice_records_subscriber", "external_invoice_records", ["subscriber_id"]
    )
    op.create_index("ix_external_invoice_records_status", "external_invoice_records", ["status"])
    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "external_invoice_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("external_invoice_records.id"),
            nullable=False,
        ),
        sa.Column("subscriber_id", sa.Uuid(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("status", payment_attempt_status, nullable=False),
        sa.Column("attempt_type", sa.String(20), server_default="automatic"),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("failure_reason", sa.String(255)),
        sa.Column("payment_method_type", sa.String(50)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("remote_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("object_id", sa.String(255)),
        sa.Column("object_type", sa.String(50)),
        sa.Column("payload", sa.JSON),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_webhook_events_processed", "webhook_events", ["processed"])
    op.create_index("ix_webhook_events_object_id", "webhook_events", ["object_id"])
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("actor_id", sa.String(120), nullable=False),
        sa.Column("action", sa.String(80), nullable=False),
        sa.Column("entity_type", sa.String(80), nullable=False),
        sa.Column("entity_id", sa.String(120), nullable=False),
        sa.Column("metadata", sa.JSON),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_webhook_events_object_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_processed", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("payment_attempts")
    op.drop_index("ix_external_invoice_records_status", table_name="external_invoice_records")
    op.drop_index("ix_external_invoice_records_subscriber", table_name="external_invoice_records")
    op.drop_table("external_invoice_records")
    op.drop_table("processor_customers")
    op.drop_index("uq_invoice_attachments_primary", table_name="invoice_attachments")
    op.drop_table("invoice_attachments")
    op.drop_table("bill_credits")
    op.drop_index("ix_bills_status", table_name="bills")
    op.drop_table("bills")
    op.drop_index("ix_stored_files_subscriber_active", table_name="stored_files")
    op.drop_table("stored_files")
    op.drop_index("ix_messages_created_at", table_name="messages")
    op.drop_table("messages")
    op.drop_table("subscribers")
    bind = op.get_bind()
    for enum in (payment_attempt_status, external_invoice_status, invoice_type, bill_status):
        enum.drop(bind, checkfirst=True)
