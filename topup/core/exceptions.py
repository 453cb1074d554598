# topup/core/exceptions.py
from __future__ import annotations

"""
Unified exceptions & handlers for the top-up billing service.

- Domain exceptions for the billing engine (validation, not found, duplicate
  invoice, invalid state transition, gateway failures)
- Global FastAPI handlers with structured logging via topup.core.logging
- RFC 7807-style JSON body (problem+json-compatible fields)
- IntegrityError / SQLAlchemyError / RequestValidationError handling
"""

import re
from typing import Any, Dict, Mapping, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from topup.core.logging import bound_context, get_logger, get_request_id, redact_secrets

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Custom domain exceptions
# -----------------------------------------------------------------------------

class TopupException(Exception):
    """Base domain exception."""
    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        http_status: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.extra = extra or {}
        self.headers = headers or {}
        self.http_status = http_status
        super().__init__(self.message)

class AuthenticationError(TopupException):
    """Authentication related errors."""

class TopupValidationError(TopupException):
    """Input failed validation; nothing was persisted and the gateway was not called."""

class NotFoundError(TopupException):
    """Resource not found errors."""

class ConflictError(TopupException):
    """Resource conflict errors."""

class ExternalServiceError(TopupException):
    """External service errors."""


class DuplicateInvoiceError(ConflictError):
    """A billing record with the same invoice id (or external id) already exists."""

    def __init__(self, invoice_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Billing record {invoice_id} already exists",
            code="DUPLICATE_INVOICE",
            extra={"invoice_id": invoice_id},
        )
        self.invoice_id = invoice_id


class InvalidStateTransitionError(ConflictError):
    """Transition requested from a terminal billing status."""

    def __init__(
        self,
        invoice_id: str,
        current_status: str,
        target_status: str,
        message: Optional[str] = None,
    ):
        super().__init__(
            message
            or f"Billing record {invoice_id} is already {current_status}; cannot move to {target_status}",
            code="INVALID_STATE_TRANSITION",
            extra={
                "invoice_id": invoice_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.target_status = target_status


class GatewayError(ExternalServiceError):
    """
    Payment gateway call failed: timeout, non-success status or malformed body.
    Safe to retry, the gateway deduplicates on our reference.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        timeout: bool = False,
    ):
        super().__init__(
            message,
            code="GATEWAY_TIMEOUT" if timeout else "GATEWAY_ERROR",
            extra={"gateway_status_code": status_code, "gateway_body": body, "timeout": timeout},
        )
        self.status_code = status_code
        self.body = body
        self.timeout = timeout


class WebhookSignatureError(AuthenticationError):
    """Callback signature missing or invalid."""

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _problem_json(
    title: str,
    detail: str,
    status_code: int,
    code: Optional[str] = None,
    instance: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """RFC 7807 inspired body (application/problem+json compatible)."""
    body: Dict[str, Any] = {
        "type": f"https://httpstatuses.com/{status_code}",
        "title": title,
        "status": status_code,
        "detail": detail,
        "code": code,
    }
    if instance:
        body["instance"] = instance
    if extras:
        body["extra"] = redact_secrets(extras)
    return {k: v for k, v in body.items() if v is not None}

def _extract_request_id(headers: Mapping[str, str]) -> str:
    for k in ("x-request-id", "x-correlation-id"):
        if k in headers:
            return headers.get(k, "")
    return get_request_id()

def _json_problem_response(
    status_code: int,
    content: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=headers or {}, media_type="application/problem+json")

_DUP_RE = re.compile(r"duplicate key|unique constraint|unique violation", re.IGNORECASE)
_NOTNULL_RE = re.compile(r"not null", re.IGNORECASE)

def _parse_integrity_error(exc: IntegrityError) -> Tuple[str, str]:
    text = str(getattr(exc, "orig", exc))
    if _DUP_RE.search(text):
        return ("A record with this value already exists", "DUPLICATE_VALUE")
    if _NOTNULL_RE.search(text):
        return ("Required field is missing", "REQUIRED_FIELD")
    return ("A database constraint was violated", "INTEGRITY_ERROR")

def _status_for(exc: TopupException) -> Tuple[int, str]:
    if isinstance(exc, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED, "Authentication error"
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND, "Resource not found"
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT, "Conflict"
    if isinstance(exc, GatewayError) and exc.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT, "Upstream timeout"
    if isinstance(exc, ExternalServiceError):
        return status.HTTP_502_BAD_GATEWAY, "Upstream service error"
    if isinstance(exc, TopupValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error"
    return status.HTTP_400_BAD_REQUEST, "Bad request"

# -----------------------------------------------------------------------------
# Exception Handlers (FastAPI)
# -----------------------------------------------------------------------------

async def topup_exception_handler(request: Request, exc: TopupException) -> JSONResponse:
    """Maps domain exceptions to HTTP status codes."""
    sc, title = _status_for(exc)
    sc = exc.http_status or sc

    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning(
            "Domain exception",
            exception_type=type(exc).__name__,
            message=exc.message,
            code=exc.code,
            path=request.url.path,
            method=request.method,
            extra=redact_secrets(exc.extra),
        )

    body = _problem_json(
        title=title,
        detail=exc.message,
        status_code=sc,
        code=exc.code,
        instance=str(request.url),
        extras=exc.extra,
    )
    return _json_problem_response(sc, body, headers=exc.headers)

async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning(
            "Request validation error",
            errors=redact_secrets(list(errs)),
            path=request.url.path,
            method=request.method,
        )

    body = _problem_json(
        title="Validation error",
        detail="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="REQUEST_VALIDATION_ERROR",
        instance=str(request.url),
        extras={"errors": [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in errs]},
    )
    return _json_problem_response(status.HTTP_422_UNPROCESSABLE_ENTITY, body)

async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.info(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
        )

    body = _problem_json(
        title=f"HTTP {exc.status_code}",
        detail=str(exc.detail),
        status_code=exc.status_code,
        code=f"HTTP_{exc.status_code}",
        instance=str(request.url),
    )
    return _json_problem_response(exc.status_code, body, headers=exc.headers or {})

async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    msg, code = _parse_integrity_error(exc)
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.warning(
            "Database integrity error",
            error=str(getattr(exc, "orig", exc)),
            path=request.url.path,
            method=request.method,
            code=code,
        )

    body = _problem_json(
        title="Integrity error",
        detail=msg,
        status_code=status.HTTP_409_CONFLICT,
        code=code,
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_409_CONFLICT, body)

async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("DB operational error", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Database unavailable",
        detail="Database is temporarily unavailable. Please retry later.",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="DB_UNAVAILABLE",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_503_SERVICE_UNAVAILABLE, body)

async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("SQLAlchemy error", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Database error",
        detail="Database operation failed",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="DB_ERROR",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_500_INTERNAL_SERVER_ERROR, body)

async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for uncaught exceptions."""
    with bound_context(request_id=_extract_request_id(request.headers)):
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path, method=request.method)

    body = _problem_json(
        title="Internal server error",
        detail="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        instance=str(request.url),
    )
    return _json_problem_response(status.HTTP_500_INTERNAL_SERVER_ERROR, body)

# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to FastAPI app."""
    app.add_exception_handler(TopupException, topup_exception_handler)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

    app.add_exception_handler(IntegrityError, integrity_error_handler)          # 409
    app.add_exception_handler(OperationalError, operational_error_handler)      # 503
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)    # 500

    app.add_exception_handler(Exception, global_exception_handler)

__all__ = [
    "TopupException",
    "AuthenticationError",
    "TopupValidationError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
    "DuplicateInvoiceError",
    "InvalidStateTransitionError",
    "GatewayError",
    "WebhookSignatureError",
    "register_exception_handlers",
]
