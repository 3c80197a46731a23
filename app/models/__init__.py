from app.models.audit import AuditEvent  # noqa: F401
from app.models.billing import (  # noqa: F401
    Bill,
    BillCredit,
    BillStatus,
    ExternalInvoiceRecord,
    ExternalInvoiceStatus,
    InvoiceAttachment,
    InvoiceType,
    PaymentAttempt,
    PaymentAttemptStatus,
    ProcessorCustomer,
    WebhookEvent,
)
from app.models.message import Message  # noqa: F401
from app.models.stored_file import StoredFile  # noqa: F401
from app.models.subscriber import Subscriber  # noqa: F401
