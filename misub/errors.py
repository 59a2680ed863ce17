"""
MiSub - Error Handling
=======================
Error classes raised by the handlers and the single JSON envelope every
failure is rendered with:

    {"success": false, "code": "NOT_FOUND", "message": "Group not found"}

500 responses additionally carry a "trace" field, but only when the server
is configured with ``server.expose_errors: true``.

Handled here:
    - APIError subclasses      -> their own status code
    - RequestValidationError   -> 400 (500 when the body is missing or not JSON,
                                  401 first when the route needs a session)
    - Starlette HTTPException  -> 404 fallback / 405 from the router

Anything else escapes to the CORS envelope middleware in main.py, which is
the top-level catch-all.
"""

import logging
import traceback
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


# =============================================================================
# Error classes
# =============================================================================

class APIError(Exception):
    """Base class for errors that map to a client-visible status code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthError(APIError):
    """Missing, invalid or expired credentials."""
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ValidationError(APIError):
    """Malformed or missing request fields."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(APIError):
    """A referenced entity id does not exist."""
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(APIError):
    """A read-check-write cycle kept losing to concurrent writers."""
    status_code = 409
    code = "CONFLICT"


class StoreError(APIError):
    """The key-value store is unavailable or failed to read/write."""
    status_code = 500
    code = "STORE_ERROR"


# =============================================================================
# Envelope
# =============================================================================

class ErrorResponse(BaseModel):
    """Unified error payload."""
    success: bool = False
    code: str
    message: str
    trace: str | None = None


def error_response(
    status_code: int,
    code: str,
    message: str,
    trace: str | None = None,
) -> JSONResponse:
    """Build a JSONResponse carrying the error envelope."""
    content = ErrorResponse(code=code, message=message, trace=trace)
    return JSONResponse(
        status_code=status_code,
        content=content.model_dump(exclude_none=True),
    )


def unexpected_error_response(
    exc: BaseException,
    expose: bool,
    code: str = "INTERNAL_ERROR",
) -> JSONResponse:
    """
    Render an unexpected failure as a 500.

    Args:
        exc:    The exception that escaped the handler.
        expose: Include the exception message and traceback in the payload.
        code:   Error code for the envelope.

    Returns:
        The 500 JSONResponse.
    """
    if not expose:
        return error_response(500, code, "Internal server error")
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return error_response(500, code, str(exc) or type(exc).__name__, trace)


# =============================================================================
# Handler registration
# =============================================================================

def _body_unreadable(errors: list[dict]) -> bool:
    """True if the body is not JSON at all, or was not sent."""
    for err in errors:
        if err.get("type") == "json_invalid":
            return True
        if err.get("type") == "missing" and tuple(err.get("loc", ())) == ("body",):
            return True
    return False


def setup_exception_handlers(
    app: FastAPI,
    expose_errors: bool,
    fallback: Callable[[Request, int], Any],
    rejects_anonymous: Callable[[Request], bool],
) -> None:
    """
    Register exception handlers on the app.

    Args:
        app:               The FastAPI application.
        expose_errors:     Whether 500 payloads include message and trace.
        fallback:          Called with (request, status) for unmatched routes
                           and methods; returns the response to send.
        rejects_anonymous: True if the matched route needs a session the
                           request does not have. FastAPI parses the body
                           before route dependencies run, so body errors
                           consult this first.
    """

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            if not expose_errors:
                return error_response(exc.status_code, exc.code, "Internal server error")
            return unexpected_error_response(exc, True, exc.code)
        logger.info(
            "%s %s -> %d %s",
            request.method, request.url.path, exc.status_code, exc.message,
        )
        return error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        if rejects_anonymous(request):
            return error_response(AuthError.status_code, AuthError.code, "Unauthorized")

        errors = exc.errors()
        # Unparseable or absent body is a 500, not a field error.
        if _body_unreadable(errors):
            logger.warning("%s %s: unreadable JSON body", request.method, request.url.path)
            return unexpected_error_response(ValueError("Malformed JSON body"), expose_errors)

        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if field:
            message = f"{field}: {message}"
        return error_response(400, ValidationError.code, message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return fallback(request, exc.status_code)
        return error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))
