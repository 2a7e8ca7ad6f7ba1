from __future__ import annotations

from typing import Any

from storefront_auth.api.schemas import Envelope, ErrorBody
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import ServiceError
from storefront_auth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _envelope(
    status_code: int, message: str, details: Any = None, code: str | None = None
) -> tuple[int, dict]:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return status_code, Envelope(status="error", error=error_body).model_dump()


def error_envelope(exc: BaseException) -> tuple[int, dict]:
    """Map an exception to ``(status_code, envelope)`` for the transport layer.

    Only messages written for callers are exposed; storage errors and
    unexpected exceptions are reduced to a generic message.
    """

    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            reason=getattr(exc, "reason", None),
        )
        return _envelope(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)
    if isinstance(exc, ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message)
        return _envelope(409, "Resource already exists", code="conflict")
    if isinstance(exc, StoreUnavailable):
        logger.error("store_unavailable", error=str(exc))
        return _envelope(
            503, "Service temporarily unavailable, please retry", code="service_unavailable"
        )
    logger.error("unhandled_exception", error_type=type(exc).__name__, exc_info=exc)
    return _envelope(500, "Internal server error", code="server_error")


def ok_envelope(data: Any) -> dict:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return Envelope(status="ok", data=data).model_dump()
