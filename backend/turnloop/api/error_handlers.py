"""Error Handlers — render every failure as the {"error": {...}} envelope.

Invariants:
    - TurnloopError → its own http_status and to_response() body
    - RequestValidationError → 400 VALIDATION_ERROR with field-level details
    - Anything else → 500 INTERNAL_ERROR; the exception text never reaches the client
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from turnloop.core.errors import ErrorCategory, ErrorSeverity, TurnloopError

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TurnloopError, handle_turnloop_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)


async def handle_turnloop_error(request: Request, exc: TurnloopError) -> JSONResponse:
    log = logger.warning if exc.recoverable or exc.http_status < 500 else logger.error
    log("%s on %s: %s", exc.code, request.url.path, exc.message,
        extra={"error_code": exc.code, "path": request.url.path,
               "conversation_id": exc.context.conversation_id})
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


async def handle_validation_error(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    logger.warning("Validation error on %s: %s", request.url.path, details,
        extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_envelope(
            "VALIDATION_ERROR", "Invalid request data",
            ErrorCategory.VALIDATION, ErrorSeverity.ERROR, details=details,
        ),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s: %s", request.url.path, exc,
        exc_info=True, extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope(
            "INTERNAL_ERROR", "An unexpected error occurred",
            ErrorCategory.INTERNAL, ErrorSeverity.CRITICAL,
        ),
    )


def _envelope(code, message, category, severity, **extra) -> dict:
    return {"error": {
        "code": code, "message": message,
        "category": category.value, "severity": severity.value,
        **extra,
    }}
