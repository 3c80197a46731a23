"""Billing error taxonomy and the JSON error handlers for the API."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingError(HTTPException):
    """Base class for errors raised by the billing core.

    Subclasses carry a stable ``code`` and the HTTP status the API layer
    should answer with. Services raise them directly, the same way they
    would raise ``HTTPException``.
    """

    status_code = 400
    code = "billing_error"

    def __init__(self, detail: str, *, details: object | None = None):
        super().__init__(status_code=self.status_code, detail=detail)
        self.details = details

    @property
    def message(self) -> str:
        return str(self.detail)


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    status_code = 409
    code = "conflict"


class SecurityError(BillingError):
    status_code = 403
    code = "security_error"


class ExternalServiceError(BillingError):
    status_code = 502
    code = "external_service_error"

    def __init__(
        self,
        detail: str,
        *,
        details: object | None = None,
        retryable: bool = False,
        provider_code: str | None = None,
    ):
        super().__init__(detail, details=details)
        self.retryable = retryable
        self.provider_code = provider_code


class PersistenceError(BillingError):
    status_code = 503
    code = "persistence_error"


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    return str(rid) if rid else "unknown"


def register_error_handlers(app) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.warning(
                "Billing error on %s %s: %s", request.method, request.url.path, exc.message
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, _request_id(request)),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        def _sanitize_input(value):
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            if isinstance(value, UploadFile):
                return value.filename or "upload"
            if isinstance(value, dict):
                return {key: _sanitize_input(val) for key, val in value.items()}
            if isinstance(value, (list, tuple, set)):
                return [_sanitize_input(item) for item in value]
            if isinstance(value, (str, int, float, bool)) or value is None:
                return value
            return str(value)

        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            error_copy.pop("ctx", None)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
