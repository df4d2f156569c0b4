from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from twofold.apps.api.response import error_response, is_versioned_request
from twofold.core.errors import (
    AccessDenied,
    InviteAlreadyConsumed,
    InviteExpired,
    InvitePermissionError,
    MigrationFailure,
    NotFound,
    TenantMismatchError,
    TransientStoreError,
    TwofoldError,
    ValidationError,
)
from twofold.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    410: "GONE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# First match wins; InvitePermissionError is both a ValidationError and an AccessDenied.
_DOMAIN_ERRORS: tuple[tuple[type[TwofoldError], int, str], ...] = (
    (InvitePermissionError, 403, "INVITE_FORBIDDEN"),
    (AccessDenied, 403, "AUTH_FORBIDDEN"),
    (NotFound, 404, "NOT_FOUND"),
    (ValidationError, 422, "VALIDATION_ERROR"),
    (InviteExpired, 410, "INVITE_EXPIRED"),
    (InviteAlreadyConsumed, 409, "INVITE_ALREADY_CONSUMED"),
    (TransientStoreError, 503, "STORE_UNAVAILABLE"),
    (MigrationFailure, 500, "MIGRATION_FAILED"),
    (TenantMismatchError, 500, "TENANT_MISMATCH"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def domain_status(exc: TwofoldError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _respond(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Unversioned aliases keep FastAPI's plain {"detail": ...} shape.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def domain_exception_handler(request: Request, exc: TwofoldError) -> JSONResponse:
    status_code, code = domain_status(exc)
    if status_code >= 500:
        logger.error("domain_error path=%s code=%s", request.url.path, code, exc_info=exc)
        message = "Store unavailable, retry later" if status_code == 503 else "Internal server error"
    else:
        message = str(exc) or code
    return _respond(request, status_code=status_code, code=code, message=message)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    return _respond(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    return _respond(request, status_code=500, code="TENANT_PREDICATE_REQUIRED", message="Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _respond(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
