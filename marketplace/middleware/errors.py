"""
Map marketplace errors to HTTP responses.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from marketplace.errors import (
    AlreadyInstalled,
    ConfigurationError,
    EventNotFound,
    InstallationInactive,
    InstallationNotFound,
    IntegrationNotFound,
    IntegrationNotInstallable,
    InvalidTransition,
    MarketplaceError,
    OutboundCallFailed,
    RateLimited,
)
from marketplace.logging_config import get_logger
from marketplace.store import StoreConflict


log = get_logger(component="api")

STATUS_CODES = [
    ((InstallationNotFound, IntegrationNotFound, EventNotFound), status.HTTP_404_NOT_FOUND),
    ((AlreadyInstalled, InvalidTransition, InstallationInactive, StoreConflict), status.HTTP_409_CONFLICT),
    ((IntegrationNotInstallable, ConfigurationError), status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((RateLimited,), status.HTTP_429_TOO_MANY_REQUESTS),
    ((OutboundCallFailed,), status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: MarketplaceError) -> int:
    for types, code in STATUS_CODES:
        if isinstance(exc, types):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    code = status_for(exc)
    headers = None

    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    elif isinstance(exc, OutboundCallFailed):
        log.warning(
            "outbound_call_failed",
            installation_id=exc.installation_id,
            upstream_status=exc.status_code,
            error=str(exc),
        )

    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
