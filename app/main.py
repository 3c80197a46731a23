import logging
import uuid

from fastapi import Depends, FastAPI, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.api.billing import router as billing_router
from app.api.billing import webhook_router as billing_webhook_router
from app.api.deps import require_user_auth
from app.db import get_db
from app.errors import register_error_handlers
from app.logging import configure_logging

configure_logging()
app = FastAPI(title="Agency Billing API")
logger = logging.getLogger(__name__)
register_error_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1/billing", dependencies=dependencies)


_include_api_router(billing_router, dependencies=[Depends(require_user_auth)])
# Signed by Stripe, not by a user token.
_include_api_router(billing_webhook_router)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
