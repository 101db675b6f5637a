"""Error handlers for API."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from exec_relay.core.exceptions import (
    BadRequestError,
    ExecRelayError,
    InvalidSessionStateError,
    PersistenceError,
    SandboxUnavailableError,
    SessionAlreadyTerminalError,
    SessionNotFoundError,
    UnsupportedLanguageError,
    WorkspaceBusyError,
)

logger = logging.getLogger(__name__)

# Map exceptions to HTTP status codes
EXCEPTION_STATUS_MAP = {
    WorkspaceBusyError: 409,
    UnsupportedLanguageError: 400,
    BadRequestError: 400,
    SandboxUnavailableError: 503,
    SessionNotFoundError: 404,
    SessionAlreadyTerminalError: 409,
    InvalidSessionStateError: 409,
    PersistenceError: 500,
}


def make_error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Create a standard error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": {
                "code": code,
                "message": message,
                "details": details or {},
            },
            "meta": {
                "request_id": str(uuid.uuid4()),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        },
    )


async def exec_relay_error_handler(
    request: Request,
    exc: ExecRelayError,
) -> JSONResponse:
    """Handle ExecRelayError exceptions."""
    status_code = EXCEPTION_STATUS_MAP.get(type(exc), 500)
    logger.warning(f"ExecRelayError: {exc.code} - {exc.message}")
    return make_error_response(
        code=exc.code,
        message=exc.message,
        details=exc.details,
        status_code=status_code,
    )


async def request_validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle malformed request bodies and query parameters."""
    logger.warning(f"RequestValidationError: {exc.errors()}")
    return make_error_response(
        code="bad_request",
        message="Request validation failed",
        details={"errors": jsonable_errors(exc)},
        status_code=400,
    )


async def validation_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle validation errors."""
    logger.warning(f"ValidationError: {exc}")
    return make_error_response(
        code="bad_request",
        message=str(exc),
        status_code=400,
    )


async def generic_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected errors."""
    logger.exception(f"Unexpected error: {exc}")
    return make_error_response(
        code="internal_error",
        message="An unexpected error occurred",
        details={"error": str(exc)},
        status_code=500,
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors reduced to JSON-safe fields."""
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:
    """Register all error handlers with the app."""
    app.add_exception_handler(ExecRelayError, exec_relay_error_handler)  # type: ignore
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)  # type: ignore
    app.add_exception_handler(ValueError, validation_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)
