"""MetaSync - HTTP Error Envelope.

Maps the error taxonomy to ``{error, details, instruction?}`` responses.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from metasync.core.errors import (
    ExpiredCredentialError,
    MalformedInputError,
    MetaAPIError,
    MetaSyncError,
    PermissionDeniedError,
    PersistenceError,
    TransientUpstreamError,
    is_rate_limit_error,
)
from metasync.core.logging import get_logger

logger = get_logger("api.errors")


def error_response(
    status_code: int, error: str, details: str, instruction: Optional[str] = None
) -> JSONResponse:
    body = {"error": error, "details": details}
    if instruction:
        body["instruction"] = instruction
    return JSONResponse(status_code=status_code, content=body)


def describe(exc: MetaSyncError) -> tuple[int, str]:
    """HTTP status and headline for an error class."""
    if isinstance(exc, ExpiredCredentialError):
        return 401, "Meta access token expired or invalid"
    if isinstance(exc, PermissionDeniedError):
        return 403, "Insufficient permissions"
    if isinstance(exc, MalformedInputError):
        return 400, "Invalid request"
    if isinstance(exc, TransientUpstreamError) and is_rate_limit_error(exc):
        return 429, "Meta API rate limit reached"
    if isinstance(exc, PersistenceError):
        return 500, "Database write failed"
    if isinstance(exc, MetaAPIError):
        return 500, "Meta API request failed"
    return 500, "Internal error"


async def metasync_error_handler(request: Request, exc: MetaSyncError) -> JSONResponse:
    status_code, headline = describe(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"{request.method} {request.url.path} → {status_code}: {exc}",
        extra={"status_code": status_code},
    )
    return error_response(status_code, headline, str(exc), exc.instruction)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return error_response(400, "Invalid request", details)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MetaSyncError, metasync_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
