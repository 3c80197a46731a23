from datetime import date

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_stripe_client
from app.db import get_db
from app.models.billing import InvoiceType
from app.schemas.billing import (
    ActivitySummary,
    BatchInvoiceRequest,
    BatchInvoiceResult,
    BillCreate,
    BillRead,
    BillStats,
    BillStatusUpdate,
    ConnectionTestResult,
    CreditApply,
    ExternalInvoiceRecordRead,
    InvoiceAttachmentRead,
    LinkDocumentRequest,
    WebhookIngestResult,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services.auth_dependencies import require_permission
from app.services.common import list_response
from app.services.file_storage import build_content_disposition, document_store
from app.services.stripe_client import StripeClient

router = APIRouter()
webhook_router = APIRouter()


# --- Activity ---


@router.get(
    "/activity",
    response_model=list[ActivitySummary],
    tags=["activity"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def compute_activity(
    period_start: date,
    period_end: date,
    subscriber_id: str | None = None,
    db: Session = Depends(get_db),
):
    return billing_service.activity.compute(db, period_start, period_end, subscriber_id)


# --- Bills ---


@router.post(
    "/bills",
    response_model=BillRead,
    status_code=status.HTTP_201_CREATED,
    tags=["bills"],
)
def create_bill(
    payload: BillCreate,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:create")),
):
    return billing_service.bills.create(db, payload, created_by=auth["actor_id"])


@router.get(
    "/bills",
    response_model=ListResponse[BillRead],
    tags=["bills"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def list_bills(
    subscriber_id: str | None = None,
    status: str | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.bills.list_response(
        db,
        subscriber_id=subscriber_id,
        status=status,
        period_start=period_start,
        period_end=period_end,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/bills/{bill_id}",
    response_model=BillRead,
    tags=["bills"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def get_bill(bill_id: str, db: Session = Depends(get_db)):
    return billing_service.bills.get(db, bill_id)


@router.post(
    "/bills/{bill_id}/status",
    response_model=BillRead,
    tags=["bills"],
)
def update_bill_status(
    bill_id: str,
    payload: BillStatusUpdate,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    return billing_service.bills.update_status(db, bill_id, payload, updated_by=auth["actor_id"])


@router.post(
    "/bills/{bill_id}/credits",
    response_model=BillRead,
    tags=["bills"],
)
def apply_bill_credit(
    bill_id: str,
    payload: CreditApply,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    return billing_service.bills.apply_credit(db, bill_id, payload, applied_by=auth["actor_id"])


@router.delete(
    "/bills/{bill_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["bills"],
)
def delete_bill(
    bill_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:delete")),
):
    billing_service.bills.delete(db, bill_id, requested_by=auth["actor_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/subscribers/{subscriber_id}/billing-stats",
    response_model=BillStats,
    tags=["bills"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def get_billing_stats(subscriber_id: str, db: Session = Depends(get_db)):
    return billing_service.bills.stats(db, subscriber_id)


# --- Invoice attachments ---


@router.get(
    "/bills/{bill_id}/attachments",
    response_model=list[InvoiceAttachmentRead],
    tags=["invoice-attachments"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def list_bill_attachments(bill_id: str, db: Session = Depends(get_db)):
    return billing_service.attachments.list_for_bill(db, bill_id)


@router.post(
    "/bills/{bill_id}/attachments",
    response_model=InvoiceAttachmentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoice-attachments"],
)
async def upload_bill_attachment(
    bill_id: str,
    file: UploadFile = File(...),
    invoice_type: InvoiceType = Form(default=InvoiceType.generated),
    invoice_number: str | None = Form(default=None),
    amount: str | None = Form(default=None),
    is_primary: bool = Form(default=False),
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    content = await file.read()
    return billing_service.attachments.attach_uploaded_document(
        db,
        bill_id,
        filename=file.filename or "invoice",
        content=content,
        content_type=file.content_type,
        uploaded_by=auth["actor_id"],
        invoice_type=invoice_type,
        invoice_number=invoice_number or None,
        amount=amount or None,
        is_primary=is_primary,
    )


@router.post(
    "/bills/{bill_id}/attachments/link",
    response_model=InvoiceAttachmentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoice-attachments"],
)
def link_bill_attachment(
    bill_id: str,
    payload: LinkDocumentRequest,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    return billing_service.attachments.link_existing_document(
        db,
        bill_id,
        payload.document_id,
        linked_by=auth["actor_id"],
        invoice_type=payload.invoice_type,
        invoice_number=payload.invoice_number,
        amount=payload.amount,
        is_primary=payload.is_primary,
    )


@router.post(
    "/attachments/{attachment_id}/primary",
    response_model=InvoiceAttachmentRead,
    tags=["invoice-attachments"],
)
def set_primary_attachment(
    attachment_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    return billing_service.attachments.set_primary(db, attachment_id, actor_id=auth["actor_id"])


@router.delete(
    "/attachments/{attachment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["invoice-attachments"],
)
def unlink_attachment(
    attachment_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_permission("billing:bill:update")),
):
    billing_service.attachments.unlink(db, attachment_id, actor_id=auth["actor_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/documents/{document_id}/download",
    tags=["invoice-attachments"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def download_document(document_id: str, db: Session = Depends(get_db)):
    record = document_store.get(db, document_id)
    content = document_store.fetch(db, document_id)
    return Response(
        content=content,
        media_type=record.content_type or "application/octet-stream",
        headers={"Content-Disposition": build_content_disposition(record.original_filename)},
    )


# --- Stripe invoices ---


@router.post(
    "/invoices/batch",
    response_model=BatchInvoiceResult,
    tags=["stripe"],
)
def create_batch_invoices(
    payload: BatchInvoiceRequest,
    db: Session = Depends(get_db),
    client: StripeClient = Depends(get_stripe_client),
    auth=Depends(require_permission("billing:invoice:create")),
):
    summaries = billing_service.activity.compute(db, payload.period_start, payload.period_end)
    if payload.subscriber_ids is not None:
        wanted = set(payload.subscriber_ids)
        summaries = [summary for summary in summaries if summary.subscriber_id in wanted]
    return billing_service.payment_sync.create_batch_invoices(
        db, summaries, payload.billing_period, requested_by=auth["actor_id"], client=client
    )


@router.get(
    "/invoices",
    response_model=ListResponse[ExternalInvoiceRecordRead],
    tags=["stripe"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def list_external_invoices(
    subscriber_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = billing_service.payment_sync.list_records(
        db, subscriber_id, status, order_by, order_dir, limit, offset
    )
    return list_response(items, limit, offset)


@router.post(
    "/invoices/{record_id}/refresh",
    response_model=ExternalInvoiceRecordRead,
    tags=["stripe"],
    dependencies=[Depends(require_permission("billing:invoice:update"))],
)
def refresh_external_invoice(
    record_id: str,
    db: Session = Depends(get_db),
    client: StripeClient = Depends(get_stripe_client),
):
    return billing_service.payment_sync.refresh_invoice_status(db, record_id, client)


@router.get(
    "/stripe/connection",
    response_model=ConnectionTestResult,
    tags=["stripe"],
    dependencies=[Depends(require_permission("billing:read"))],
)
def test_stripe_connection(client: StripeClient = Depends(get_stripe_client)):
    return billing_service.payment_sync.test_connection(client)


# --- Webhooks ---


@webhook_router.post(
    "/payment-events/stripe",
    response_model=WebhookIngestResult,
    tags=["payment-events"],
)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    result = billing_service.webhooks.ingest(db, body, signature)
    if not result["processed"]:
        # Non-2xx makes Stripe redeliver the event.
        return JSONResponse(status_code=500, content=WebhookIngestResult(**result).model_dump())
    return result


@router.post(
    "/payment-events/cleanup",
    tags=["payment-events"],
    dependencies=[Depends(require_permission("billing:write"))],
)
def cleanup_payment_events(
    keep_days: int = Query(default=30, ge=1, le=3650),
    db: Session = Depends(get_db),
):
    return {"deleted": billing_service.webhooks.cleanup(db, keep_days)}
