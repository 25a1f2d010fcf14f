"""Gestion standardisée des erreurs API avec enveloppes d'erreur.

Enveloppe JSON commune `{code, message, trace_id, details?}` et traduction des erreurs
métier du pipeline (enveloppe inconnue, transition refusée) en réponses HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contentpipe.domain.errors import (
    CategoryError,
    ContentPipeError,
    EnvelopeNotFoundError,
    EnvelopeValidationError,
    InvalidTransitionError,
)

log = structlog.get_logger(__name__).bind(component="api_errors")


class ErrorCodes:
    """Codes d'erreur stables exposés par l'API."""

    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    ENVELOPE_NOT_FOUND = "ENVELOPE_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_ENVELOPE = "INVALID_ENVELOPE"
    CATEGORY_CONFLICT = "CATEGORY_CONFLICT"


_HTTP_CODES = {
    400: ErrorCodes.BAD_REQUEST,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    500: ErrorCodes.INTERNAL_ERROR,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}

# Erreur métier -> (statut HTTP, code)
_DOMAIN_CODES: list[tuple[type[ContentPipeError], int, str]] = [
    (EnvelopeNotFoundError, 404, ErrorCodes.ENVELOPE_NOT_FOUND),
    (InvalidTransitionError, 409, ErrorCodes.INVALID_TRANSITION),
    (EnvelopeValidationError, 422, ErrorCodes.INVALID_ENVELOPE),
    (CategoryError, 409, ErrorCodes.CATEGORY_CONFLICT),
]


@dataclass
class ErrorEnvelope:
    """Standard error envelope for API responses."""

    code: str
    message: str
    trace_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message, "trace_id": self.trace_id}
        if self.details:
            body["details"] = self.details
        return body


class APIError(HTTPException):
    """Custom API error with standard envelope."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.details = details


def create_error_response(
    status_code: int,
    code: str,
    message: str,
    trace_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    envelope = ErrorEnvelope(code=code, message=message, trace_id=trace_id, details=details)
    return JSONResponse(status_code=status_code, content=envelope.to_dict())


def extract_trace_id(request: Request) -> str | None:
    """Identifiant de trace: en-tête X-Trace-ID, sinon celui posé par le middleware."""
    return request.headers.get("X-Trace-ID") or getattr(request.state, "request_id", None)


def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    trace_id = extract_trace_id(request)
    log.warning("api_error", code=exc.code, status_code=exc.status_code, trace_id=trace_id)
    return create_error_response(exc.status_code, exc.code, exc.message, trace_id, exc.details)


def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    trace_id = extract_trace_id(request)
    code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    return create_error_response(exc.status_code, code, str(exc.detail), trace_id)


def handle_domain_error(request: Request, exc: ContentPipeError) -> JSONResponse:
    trace_id = extract_trace_id(request)
    for kind, status_code, code in _DOMAIN_CODES:
        if isinstance(exc, kind):
            log.info("domain_error", code=code, error=str(exc), trace_id=trace_id)
            return create_error_response(status_code, code, str(exc), trace_id)
    return handle_generic_exception(request, exc)


def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
    trace_id = extract_trace_id(request)
    log.error(
        "unexpected_error",
        trace_id=trace_id,
        exception_type=type(exc).__name__,
        exc_info=exc,
    )
    return create_error_response(
        500, ErrorCodes.INTERNAL_ERROR, "An unexpected error occurred", trace_id
    )


def install_error_handlers(app: FastAPI) -> None:
    """Branche les handlers d'erreurs standard sur l'application."""
    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(ContentPipeError, handle_domain_error)
    app.add_exception_handler(Exception, handle_generic_exception)
