"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from subsync.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    """Webhook signature missing or invalid. Nothing from the request is trusted."""
    code = "authentication_failed"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, message: str, *, meter: Optional[str] = None, used: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.meter = meter
        self.used = used
        self.limit = limit


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class GatewayError(AppError):
    """Payment gateway call failed; safe to retry."""
    code = "gateway_error"
    status_code = 502
    retryable = True


class GatewayTimeoutError(GatewayError):
    code = "gateway_timeout"
    status_code = 504


class TransientStoreError(AppError):
    """State store unavailable; the caller (or the gateway) should retry."""
    code = "store_unavailable"
    status_code = 503
    retryable = True


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    if isinstance(exc, QuotaExceededError):
        payload["error"]["meter"] = exc.meter
        payload["error"]["used"] = exc.used
        payload["error"]["limit"] = exc.limit
    logger = logging.getLogger("subsync")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.retryable:
        response.headers["retry-after"] = "5"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("subsync")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("subsync")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
