"""
Domain error taxonomy and its HTTP rendering.

Services raise these; routers let them propagate and the handler registered
by `register_exception_handlers` turns them into a structured JSON body:

    {"success": false, "error": "<code>", "detail": "<message>", "details": {...}}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

if TYPE_CHECKING:
    from app.models import Receipt


class BookingServiceError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "booking_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()} or None,
        }


class ValidationError(BookingServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class OverpaymentError(ValidationError):
    code = "overpayment"


class InsufficientAmountError(BookingServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "insufficient_amount"


class ForbiddenError(BookingServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(BookingServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidTransitionError(BookingServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class PreconditionError(BookingServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "precondition_failed"


class AlreadyMarkedError(PreconditionError):
    code = "already_marked"


class DuplicateReceiptError(BookingServiceError):
    """The external reference already produced a receipt. Callers treat it as success."""

    status_code = status.HTTP_200_OK
    code = "duplicate_receipt"

    def __init__(self, receipt: Receipt | None, external_reference: str) -> None:
        super().__init__(
            f"Payment reference '{external_reference}' already recorded",
            external_reference=external_reference,
        )
        self.receipt = receipt
        self.external_reference = external_reference


# Upstream statuses meaning the processor rejected the charge itself
_PAYMENT_REJECTED_STATUSES = {400, 402, 422}


class GatewayError(BookingServiceError):
    code = "gateway_error"

    def __init__(self, message: str, upstream_status: int | None = None, **details: Any):
        super().__init__(message, upstream_status=upstream_status, **details)
        self.upstream_status = upstream_status

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.upstream_status in _PAYMENT_REJECTED_STATUSES:
            return status.HTTP_402_PAYMENT_REQUIRED
        return status.HTTP_502_BAD_GATEWAY


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


async def booking_error_handler(request: Request, exc: BookingServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    else:
        logger.info(
            "{} {} rejected ({}): {}", request.method, request.url.path, exc.code, exc.message
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingServiceError, booking_error_handler)  # type: ignore[arg-type]
