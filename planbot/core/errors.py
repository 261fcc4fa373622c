"""Application errors and the handlers that turn them into API responses.

Every failure leaves the API as flat JSON: {"error": <code>, "message": ..., "request_id": ...}
plus any extra fields the error carries (reset countdown, size limit, invalid fields).
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from planbot.core.config import settings
from planbot.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.extra = extra or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class QuotaExhaustedError(AppError):
    """Daily quota for plans or media is spent. Expected outcome, not a fault."""
    code = "quota_exhausted"
    status_code = 403


class PayloadTooLargeError(AppError):
    code = "payload_too_large"
    status_code = 413


class LLMError(AppError):
    code = "ai_failed"
    status_code = 502


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


logger = logging.getLogger("planbot.errors")


def _respond(
    request: Request,
    status: int,
    code: str,
    message: str,
    *,
    extra: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    exc_info: bool = False,
) -> JSONResponse:
    rid = request_id or getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex
    level = logging.ERROR if status >= 500 else logging.WARNING
    logger.log(level, "api.%s", code, exc_info=exc_info, extra={"request_id": rid, "error_code": code, "status": status})

    body: Dict[str, Any] = {"error": code, "message": message, "request_id": rid}
    body.update(extra or {})
    return JSONResponse(status_code=status, content=body, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    return _respond(request, exc.status_code, exc.code, exc.message, extra=exc.extra, request_id=exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    return _respond(request, exc.status_code, code, message)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    # a missing identity is reported distinctly so the mini-app can re-init
    code = "tg_id_required" if "tg_id" in fields else "validation_error"
    return _respond(request, 400, code, "Invalid request", extra={"fields": fields})


async def unhandled_exception_handler(request: Request, exc: Exception):
    detail = None if settings.is_production else {"detail": f"{type(exc).__name__}: {exc}"}
    return _respond(request, 500, "server_error", "Unexpected error", extra=detail, exc_info=True)
