"""Translate service exceptions into HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bonsai_entitlements.logging import logger
from bonsai_entitlements.services.exceptions import (
    BillingProviderError,
    ServiceError,
    SignatureInvalid,
    SubscriptionNotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)

# Most specific first; SubscriptionNotFound is also a ValidationError.
STATUS_BY_ERROR: tuple[tuple[type[ServiceError], int], ...] = (
    (SubscriptionNotFound, 404),
    (ValidationError, 400),
    (Unauthorized, 401),
    (SignatureInvalid, 400),
    (BillingProviderError, 402),
    (UpstreamUnavailable, 503),
)


def status_for(exc: ServiceError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = status_for(exc)
    body: dict[str, object] = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, BillingProviderError) and exc.code:
        body["code"] = exc.code
    log = logger.warning if status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        status=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, handle_service_error)


__all__ = ["register_exception_handlers", "status_for"]
