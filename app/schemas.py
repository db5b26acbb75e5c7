from __future__ import annotations

from datetime import date, datetime, time
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models import Booking, BookingStatus, PaymentType, Receipt
from app.status_codec import BookingState, SubStatus, decode_state, is_compatible

# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    """
    Required business fields are typed optional on purpose: the state machine
    validates them and answers with a structured 400 instead of a 422.
    """

    vendor_id: UUID | None = None
    service_id: UUID | None = None
    service_name: str | None = Field(default=None, max_length=255)
    event_date: date | None = None
    event_time: time | None = None
    event_location: str | None = Field(default=None, max_length=500)
    special_requests: str | None = Field(default=None, max_length=2000)
    total_amount: int | None = None
    deposit_amount: int | None = None


class BookingStatusUpdate(BaseModel):
    """
    Every field a status change may carry, and what it does:
      status          target coarse status (checked against the transition table)
      sub_status      business sub-status stored in the status note
      notes           free-text message stored in the status note
      reason          cancellation / decline reason stored in the status note
      total_amount    quoted total; only with sub_status=quote_sent
      deposit_amount  quoted deposit; only with sub_status=quote_sent
    """

    status: BookingStatus
    sub_status: SubStatus | None = None
    notes: str | None = Field(default=None, max_length=1000)
    reason: str | None = Field(default=None, max_length=1000)
    total_amount: int | None = Field(default=None, gt=0)
    deposit_amount: int | None = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_fields(self) -> BookingStatusUpdate:
        if not is_compatible(self.status, self.sub_status):
            raise ValueError(
                f"sub_status '{self.sub_status}' is not valid for status '{self.status}'"
            )
        is_quote = self.sub_status == SubStatus.QUOTE_SENT
        if not is_quote and (self.total_amount is not None or self.deposit_amount is not None):
            raise ValueError("total_amount/deposit_amount may only be sent with a quote")
        if (
            self.total_amount is not None
            and self.deposit_amount is not None
            and self.deposit_amount > self.total_amount
        ):
            raise ValueError("deposit_amount cannot exceed total_amount")
        return self

    def to_state(self) -> BookingState:
        details: dict[str, Any] = {}
        if self.notes:
            details["message"] = self.notes
        if self.reason:
            details["reason"] = self.reason
        if self.total_amount is not None:
            details["total_amount"] = self.total_amount
        if self.deposit_amount is not None:
            details["deposit_amount"] = self.deposit_amount
        return BookingState(self.status, self.sub_status, details)


class BookingResponse(BaseModel):
    id: UUID
    couple_id: UUID
    vendor_id: UUID
    service_id: UUID | None
    service_name: str | None
    event_date: date
    event_time: time | None
    event_location: str | None
    special_requests: str | None
    total_amount: int
    deposit_amount: int
    currency: str
    status: BookingStatus
    sub_status: SubStatus | None = None
    extended_status: str
    status_details: dict[str, Any] = Field(default_factory=dict)
    vendor_completed: bool
    vendor_completed_at: datetime | None
    couple_completed: bool
    couple_completed_at: datetime | None
    fully_completed: bool
    fully_completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, inst: Booking) -> BookingResponse:
        state = decode_state(inst.status, inst.status_note)
        return cls.model_validate(
            {
                **{name: getattr(inst, name) for name in _BOOKING_COLUMNS},
                "sub_status": state.sub_status,
                "extended_status": state.extended_status,
                "status_details": state.details,
            }
        )


_BOOKING_COLUMNS = [
    name
    for name in BookingResponse.model_fields
    if name not in {"sub_status", "extended_status", "status_details"}
]


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    status: BookingStatus | None = None
    couple_id: UUID | None = None
    vendor_id: UUID | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class CompletionSide(StrEnum):
    VENDOR = "vendor"
    COUPLE = "couple"


class UnmarkSide(StrEnum):
    VENDOR = "vendor"
    COUPLE = "couple"
    BOTH = "both"


class MarkCompletedRequest(BaseModel):
    completed_by: CompletionSide
    notes: str | None = Field(default=None, max_length=1000)


class UnmarkCompletedRequest(BaseModel):
    unmark_by: UnmarkSide
    reason: str | None = Field(default=None, max_length=1000)


class CompletionStatus(BaseModel):
    booking_id: UUID
    status: BookingStatus
    vendor_completed: bool
    vendor_completed_at: datetime | None
    couple_completed: bool
    couple_completed_at: datetime | None
    fully_completed: bool
    fully_completed_at: datetime | None
    both_completed: bool
    completion_notes: str | None
    waiting_for: str | None

    @classmethod
    def from_model(cls, inst: Booking) -> CompletionStatus:
        both = inst.vendor_completed and inst.couple_completed
        if both:
            waiting_for = None
        elif inst.vendor_completed:
            waiting_for = "couple"
        elif inst.couple_completed:
            waiting_for = "vendor"
        else:
            waiting_for = "both"
        return cls(
            booking_id=inst.id,
            status=inst.status,
            vendor_completed=inst.vendor_completed,
            vendor_completed_at=inst.vendor_completed_at,
            couple_completed=inst.couple_completed,
            couple_completed_at=inst.couple_completed_at,
            fully_completed=inst.fully_completed,
            fully_completed_at=inst.fully_completed_at,
            both_completed=both,
            completion_notes=inst.completion_notes,
            waiting_for=waiting_for,
        )


class CompletionResult(BaseModel):
    message: str
    promoted: bool
    completion: CompletionStatus
    earning_transaction: str | None = None  # vendor credit written on promotion


# ---------------------------------------------------------------------------
# Payments & receipts
# ---------------------------------------------------------------------------


class PaymentProcessRequest(BaseModel):
    """Body of POST /payments/process (camelCase on the wire)."""

    booking_id: UUID = Field(alias="bookingId")
    payment_type: PaymentType = Field(alias="paymentType")
    payment_method: str = Field(alias="paymentMethod", min_length=1, max_length=50)
    amount: int = Field(gt=0)
    payment_reference: str = Field(alias="paymentReference", min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class ReceiptResponse(BaseModel):
    id: int
    receipt_number: str | None
    booking_id: UUID
    couple_id: UUID
    vendor_id: UUID
    payment_type: PaymentType
    payment_method: str
    amount_paid: int
    total_amount: int
    currency: str
    external_reference: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, inst: Receipt) -> ReceiptResponse:
        return cls.model_validate(inst, from_attributes=True)


class ReceiptPage(BaseModel):
    receipts: list[ReceiptResponse]
    count: int
    total: int
    total_pages: int
    current_page: int


class ReceiptStats(BaseModel):
    total_receipts: int = 0
    deposit_payments: int = 0
    balance_payments: int = 0
    full_payments: int = 0
    total_amount_paid: int = 0
    by_payment_method: dict[str, int] = Field(default_factory=dict)


class PaymentSummary(BaseModel):
    booking_id: UUID
    status: BookingStatus
    extended_status: str
    total_amount: int
    deposit_amount: int
    total_paid: int
    remaining_balance: int
    receipts: list[ReceiptResponse]


class PaymentProcessResponse(BaseModel):
    success: bool = True
    outcome: str
    booking: BookingResponse | None = None
    receipt: ReceiptResponse | None = None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class SourceType(StrEnum):
    GCASH = "gcash"
    PAYMAYA = "paymaya"
    GRAB_PAY = "grab_pay"


class SourceCreate(BaseModel):
    type: SourceType
    amount: int = Field(ge=100)  # PayMongo minimum is 100 centavos
    currency: str = Field(default="PHP", min_length=3, max_length=3)
    redirect: dict[str, str] | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentIntentCreate(BaseModel):
    amount: int = Field(ge=100)
    currency: str = Field(default="PHP", min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=255)
    payment_method_allowed: list[str] = Field(default_factory=lambda: ["card"])
    metadata: dict[str, str] = Field(default_factory=dict)


class GatewayResource(BaseModel):
    """Normalized PayMongo source / payment intent / payment."""

    id: str
    type: str
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    checkout_url: str | None = None
    client_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> GatewayResource:
        attributes = data.get("attributes") or {}
        redirect = attributes.get("redirect") or {}
        return cls(
            id=data["id"],
            type=data.get("type") or attributes.get("type") or "unknown",
            status=attributes.get("status"),
            amount=attributes.get("amount"),
            currency=attributes.get("currency"),
            checkout_url=redirect.get("checkout_url") or attributes.get("checkout_url"),
            client_key=attributes.get("client_key"),
            metadata=attributes.get("metadata") or {},
        )


class GatewayEventType(StrEnum):
    SOURCE_CHARGEABLE = "source.chargeable"
    PAYMENT_PAID = "payment.paid"
    PAYMENT_FAILED = "payment.failed"
    UNKNOWN = "unknown"


class GatewayEvent(BaseModel):
    """
    One PayMongo webhook delivery, flattened.

    `reference` is the idempotency key shared with the synchronous
    /payments/process path: the payment intent id for card payments, the
    source id for e-wallets, falling back to the payment id itself.
    """

    event_id: str
    type: GatewayEventType
    raw_type: str
    resource_id: str
    reference: str
    amount: int = 0
    currency: str | None = None
    payment_method: str = "card"
    metadata: dict[str, Any] = Field(default_factory=dict)
    failure_message: str | None = None

    @property
    def booking_id(self) -> UUID | None:
        raw = self.metadata.get("booking_id") or self.metadata.get("bookingId")
        try:
            return UUID(str(raw)) if raw else None
        except ValueError:
            return None

    @property
    def payment_type(self) -> PaymentType | None:
        raw = self.metadata.get("payment_type") or self.metadata.get("paymentType")
        try:
            return PaymentType(raw) if raw else None
        except ValueError:
            return None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> GatewayEvent:
        event = payload["data"]
        attributes = event.get("attributes") or {}
        raw_type = attributes.get("type") or "unknown"
        try:
            event_type = GatewayEventType(raw_type)
        except ValueError:
            event_type = GatewayEventType.UNKNOWN

        resource = attributes.get("data") or {}
        resource_attrs = resource.get("attributes") or {}
        source = resource_attrs.get("source") or {}
        resource_id = resource.get("id") or ""

        if resource.get("type") == "source" or resource_id.startswith("src_"):
            reference = resource_id
            method = resource_attrs.get("type") or "ewallet"
        else:
            reference = (
                resource_attrs.get("payment_intent_id") or source.get("id") or resource_id
            )
            method = source.get("type") or "card"

        return cls(
            event_id=event.get("id") or "",
            type=event_type,
            raw_type=raw_type,
            resource_id=resource_id,
            reference=reference,
            amount=int(resource_attrs.get("amount") or 0),
            currency=resource_attrs.get("currency"),
            payment_method=method,
            metadata=resource_attrs.get("metadata") or {},
            failure_message=resource_attrs.get("failed_message")
            or resource_attrs.get("failed_code"),
        )
