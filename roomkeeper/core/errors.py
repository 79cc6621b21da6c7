"""Error taxonomy and HTTP handlers."""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from roomkeeper.core.logging import get_correlation_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class BillingQueryFailure(AppError):
    """The billing provider could not be queried; local state is left unchanged."""
    code = "billing_query_failed"
    status_code = 502


class PurchaseCancelled(AppError):
    code = "purchase_cancelled"
    status_code = 409


class PersistenceWriteFailure(AppError):
    """A durable-store write failed after the in-memory transition was applied."""
    code = "persistence_write_failed"
    status_code = 500


class DowngradeLimitViolation(AppError):
    code = "downgrade_limit_violation"
    status_code = 409

    def __init__(self, message: str, *, rooms_to_delete: int, **kwargs):
        super().__init__(message, **kwargs)
        self.rooms_to_delete = rooms_to_delete


class RoomLimitReached(AppError):
    code = "room_limit_reached"
    status_code = 403


class RoomDeletionFailure(AppError):
    code = "room_deletion_failed"
    status_code = 500

    def __init__(self, message: str, *, room_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.room_id = room_id


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_correlation_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("roomkeeper")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"correlation_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("roomkeeper")
    logger.warning("http.error", extra={"correlation_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("roomkeeper")
    logger.error("unhandled.exception", exc_info=True, extra={"correlation_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
