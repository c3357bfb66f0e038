"""Exception handlers for the query api.

every error leaves as `{"success": false, "error": {"code", "message"}}`.
query errors carry their own status: 4xx for caller mistakes, 5xx when the
store let us down. internals (tracebacks, driver messages) stay in the logs
unless DEBUG is on.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from queryforge.errors import QueryError, QueryValidationError

logger = logging.getLogger(__name__)


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: list | None = None,
) -> JSONResponse:
    body: dict = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
        },
    }
    if details:
        body["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=body)


async def query_error_handler(request: Request, exc: QueryError) -> JSONResponse:
    if isinstance(exc, QueryValidationError):
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.code)
        message = exc.message
    else:
        logger.warning(
            "Query failed on %s %s: %s %s", request.method, request.url.path, exc.code, exc.message
        )
        message = exc.message if request.app.state.settings.DEBUG else _public_message(exc)
    return error_response(exc.status_code, exc.code, message)


def _public_message(exc: QueryError) -> str:
    if exc.retryable:
        return "The analytics store is busy or unreachable. Please try again."
    return "The query could not be executed."


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", detail)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle pydantic / request validation errors."""
    details = []
    for err in exc.errors():
        loc = " -> ".join(str(part) for part in err.get("loc", []))
        details.append({
            "field": loc,
            "message": err.get("msg", "Invalid value"),
            "type": err.get("type", "value_error"),
        })
    return error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="VALIDATION_ERROR",
        message="Request validation failed. Check the details for specific field errors.",
        details=details,
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return error_response(status.HTTP_400_BAD_REQUEST, "BAD_REQUEST", str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. Logs the full traceback."""
    logger.error(
        "Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc
    )
    message = "An unexpected error occurred. Please try again later."
    if request.app.state.settings.DEBUG:
        message = f"Internal error: {exc}"
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", message)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(QueryError, query_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
