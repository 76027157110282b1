from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from capledger.infrastructure.config import get_settings
from capledger.infrastructure.exceptions import (
    BusinessLogicError,
    CapabilityLedgerError,
    InvalidRatingError,
    MultipleValidationError,
    NotFoundError,
    OperationCancelledError,
    ValidationError,
    log_error_details,
)
from capledger.infrastructure.logging import get_logger
from capledger.web.routes import api

logger = get_logger(__name__)

# most specific first; the first matching class decides the status
STATUS_BY_ERROR: list[tuple[type[CapabilityLedgerError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MultipleValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidRatingError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BusinessLogicError, status.HTTP_409_CONFLICT),
    (OperationCancelledError, status.HTTP_409_CONFLICT),
]


def status_for(exc: CapabilityLedgerError) -> int:
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def ledger_error_handler(request: Request, exc: CapabilityLedgerError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        details = log_error_details(exc, {"path": request.url.path, "method": request.method})
        logger.error(f"Request failed: {details}", exc_info=exc)
    else:
        logger.info(f"{request.method} {request.url.path} -> {code}: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={
            "error": exc.__class__.__name__,
            "detail": exc.user_message,
            "details": {k: str(v) for k, v in exc.details.items()},
        },
    )


def create_application() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app.title,
        version=settings.app.version,
        debug=settings.app.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=settings.security.cors_methods,
        allow_headers=["*"],
    )

    app.add_exception_handler(CapabilityLedgerError, ledger_error_handler)
    app.include_router(api.router)

    return app


app = create_application()
