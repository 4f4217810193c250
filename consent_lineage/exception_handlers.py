"""
Error envelope of the read API.

The sync endpoint answers in its own wire format (`{"status": "Failure", ...}`
or `{"error": "Missing required fields."}`). Everything else that fails,
record lookups, access checks, lineage reads and unknown paths, is
rendered here as:

{
    "error": {
        "status_code": 404,
        "error_code": "RESOURCE_NOT_FOUND",
        "message": "Consent record for subject 'abc' not found",
        "type": "Not Found",
        "subject_id": "abc",
        "request_id": "5f0c...",
        "path": "/api/v1/consent/abc"
    }
}
"""

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from consent_lineage.exceptions import ConsentLineageError, ErrorCode
from consent_lineage.middleware.logging import request_id_var

logger = logging.getLogger(__name__)


def error_envelope(
    request: Request,
    status_code: int,
    error_code: ErrorCode,
    message: str,
    subject_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "status_code": status_code,
        "error_code": error_code.value,
        "message": message,
        "type": HTTPStatus(status_code).phrase,
        "path": request.url.path,
    }
    # Present on every error raised for a known subject
    if subject_id is not None:
        body["subject_id"] = subject_id
    if details:
        body["details"] = details
    request_id = request_id_var.get("")
    if request_id:
        body["request_id"] = request_id
    return JSONResponse(status_code=status_code, content={"error": body})


async def consent_lineage_exception_handler(request: Request, exc: ConsentLineageError) -> JSONResponse:
    subject_id = exc.details.get("subject_id")
    details = {key: value for key, value in exc.details.items() if key != "subject_id"}

    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        f"{exc.error_code.value} on {request.url.path}: {exc.message}",
        extra={"subject_id": subject_id, "error_code": exc.error_code.value, "status_code": exc.status_code},
    )
    return error_envelope(request, exc.status_code, exc.error_code, exc.message, subject_id=subject_id, details=details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown paths and methods."""
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        error_code = ErrorCode.RESOURCE_NOT_FOUND
    elif exc.status_code < 500:
        error_code = ErrorCode.VALIDATION_FAILED
    else:
        error_code = ErrorCode.INTERNAL_ERROR
    return error_envelope(request, exc.status_code, error_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed path or query parameters, e.g. a non-string `scopes` value."""
    errors = [
        {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    logger.warning(f"Invalid request parameters on {request.url.path}", extra={"status_code": 422})
    return error_envelope(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_FAILED,
        "Invalid request parameters",
        subject_id=request.path_params.get("subject_id"),
        details={"validation_errors": errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Internal details are logged, never returned."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_envelope(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred. Please try again later.",
        subject_id=request.path_params.get("subject_id"),
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(ConsentLineageError, consent_lineage_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
