"""Application exceptions and their HTTP rendering."""

from __future__ import annotations

import logging
from typing import Any

from catracker.config import get_settings
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class CatrackerError(Exception):
    """Base exception for the billing service."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class VerificationError(CatrackerError):
    """Inbound webhook could not be authenticated or parsed."""

    status_code = 400
    reason = "verification_failed"


class MissingSignature(VerificationError):
    reason = "missing_signature"


class MissingBody(VerificationError):
    reason = "missing_body"


class SignatureInvalid(VerificationError):
    reason = "signature_invalid"


class VerificationDisabled(VerificationError):
    reason = "verification_disabled"


class MalformedEvent(VerificationError):
    reason = "malformed_event"


class NotFoundError(CatrackerError):
    status_code = 404


class InvalidRequestError(CatrackerError):
    status_code = 400


class AuthenticationRequired(CatrackerError):
    status_code = 403


class TransientError(CatrackerError):
    """Dependency kept timing out or failing with 5xx after every retry."""

    status_code = 500


class StateConflictError(CatrackerError):
    """A concurrent writer changed subscription state first."""

    status_code = 409


class PaymentProviderError(CatrackerError):
    status_code = 500


def error_body(exc: CatrackerError) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": exc.message}
    if get_settings().is_development and exc.details:
        body["details"] = exc.details
    return body


async def _handle_catracker_error(request: Request, exc: CatrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CatrackerError, _handle_catracker_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
