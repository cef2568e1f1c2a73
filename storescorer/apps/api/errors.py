from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storescorer.apps.api.response import error_response
from storescorer.core.errors import (
    AuditNotFoundError,
    InvalidInputError,
    PaymentConfigError,
    PaymentProviderError,
    RateLimitExceededError,
    RecordNotFoundError,
    ReportNotReadyError,
    ShareRevokedError,
    StoreError,
    StoreScorerError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERROR_STATUS: tuple[tuple[type[StoreScorerError], int, str], ...] = (
    (RateLimitExceededError, 429, "RATE_LIMITED"),
    (InvalidInputError, 400, "INVALID_INPUT"),
    (WebhookSignatureError, 400, "INVALID_SIGNATURE"),
    (AuditNotFoundError, 404, "AUDIT_NOT_FOUND"),
    (RecordNotFoundError, 404, "NOT_FOUND"),
    (ShareRevokedError, 403, "SHARE_REVOKED"),
    (ReportNotReadyError, 404, "REPORT_NOT_READY"),
    (PaymentConfigError, 503, "PAYMENT_NOT_CONFIGURED"),
    (PaymentProviderError, 503, "PAYMENT_PROVIDER_UNAVAILABLE"),
    (StoreError, 503, "STORE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: StoreScorerError) -> tuple[int, str]:
    for error_cls, status_code, code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI and Starlette HTTPExceptions, including router 404/405s.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: StoreScorerError) -> JSONResponse:
    # Map service-layer errors onto stable HTTP statuses and codes.
    status_code, code = domain_error_status(exc)
    details: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    if isinstance(exc, RateLimitExceededError):
        check = exc.check
        details = {
            "type": check.type,
            "limit": check.limit,
            "remaining": check.remaining,
            "window_minutes": check.window_minutes,
        }
        headers = {"Retry-After": str(check.window_minutes * 60)}
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Unhandled errors become a generic 500 envelope; details stay in the log.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def bad_request(message: str, code: str = "BAD_REQUEST") -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": message})
