"""
Payment reconciliation.

Turns confirmed charges into receipts and booking transitions. Two entry
points feed it:
  - handle_event: PayMongo webhook deliveries (at-least-once, any order)
  - process_payment: the synchronous confirmation sent by the client app

Both go through the ledger with the same reference, so whichever path loses
the race sees DuplicateReceiptError and reports a duplicate.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from app.crud import BookingCRUD, booking_crud
from app.errors import (
    BookingServiceError,
    DuplicateReceiptError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from app.gateway import PayMongoClient, get_gateway_client
from app.ledger import ReceiptLedger, receipt_ledger
from app.models import TERMINAL_STATUSES, Booking, BookingStatus, PaymentType, Receipt
from app.schemas import GatewayEvent, GatewayEventType, PaymentProcessRequest
from app.status_codec import BookingState, SubStatus
from app.transitions import Actor


class Outcome(StrEnum):
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    FAILURE_NOTED = "failure_noted"
    CHARGE_REQUESTED = "charge_requested"
    IGNORED = "ignored"


@dataclass
class ReconciliationResult:
    outcome: Outcome
    booking_id: UUID | None = None
    receipt: Receipt | None = None
    reason: str | None = None


# Gateway statuses meaning the money moved: payment intents and sources respectively
CONFIRMED_CHARGE_STATUSES = frozenset({"succeeded", "paid"})
PAYMENT_INTENT_PREFIX = "pi_"
SOURCE_PREFIX = "src_"

# Booking state reached once a payment of each type is on the ledger
PAYMENT_TARGETS: dict[PaymentType, tuple[BookingStatus, SubStatus]] = {
    PaymentType.DEPOSIT: (BookingStatus.DOWNPAYMENT, SubStatus.DEPOSIT_PAID),
    PaymentType.BALANCE: (BookingStatus.FULLY_PAID, SubStatus.BALANCE_PAID),
    PaymentType.FULL_PAYMENT: (BookingStatus.FULLY_PAID, SubStatus.FULLY_PAID),
}


def classify_payment(amount: int, total_paid: int, total_amount: int) -> PaymentType:
    """
    Infer the payment type from amounts alone:
      deposit  nothing paid yet and amount < total
      full     nothing paid yet and amount >= total
      balance  otherwise
    """
    if total_paid == 0:
        return PaymentType.DEPOSIT if amount < total_amount else PaymentType.FULL_PAYMENT
    return PaymentType.BALANCE


class ReconciliationHandler:
    def __init__(
        self,
        ledger: ReceiptLedger = receipt_ledger,
        bookings: BookingCRUD = booking_crud,
        gateway: PayMongoClient | None = None,
    ) -> None:
        self.ledger = ledger
        self.bookings = bookings
        self._gateway = gateway

    @property
    def gateway(self) -> PayMongoClient:
        return self._gateway or get_gateway_client()

    async def _record(
        self,
        booking: Booking,
        payment_type: PaymentType,
        amount: int,
        method: str,
        reference: str,
    ) -> ReconciliationResult:
        status, sub_status = PAYMENT_TARGETS[payment_type]

        async def _advance(locked: Booking, receipt: Receipt) -> None:
            state = BookingState(
                status,
                sub_status,
                {
                    "receipt_number": receipt.receipt_number,
                    "amount": amount,
                    "reference": reference,
                },
            )
            await self.bookings.apply_transition(locked, state, Actor.SYSTEM)

        try:
            receipt = await self.ledger.create_receipt(
                payment_type,
                booking.id,
                booking.couple_id,
                booking.vendor_id,
                amount,
                method,
                reference,
                on_recorded=_advance,
            )
        except DuplicateReceiptError as exc:
            logger.info("Payment {} already recorded for booking {}", reference, booking.id)
            return ReconciliationResult(
                Outcome.DUPLICATE, booking.id, exc.receipt, "already recorded"
            )
        return ReconciliationResult(Outcome.RECORDED, booking.id, receipt)

    # -----------------------------------------------------------------------
    # Synchronous path
    # -----------------------------------------------------------------------

    async def process_payment(self, request: PaymentProcessRequest) -> ReconciliationResult:
        """
        Record a payment the client says it completed. The charge is looked up
        at the gateway first, outside any transaction, and must have succeeded
        for this booking and amount. Errors propagate.
        """
        booking = await self.bookings.get_model(request.booking_id)

        existing = await self.ledger.find_by_reference(booking.id, request.payment_reference)
        if existing is not None:
            return ReconciliationResult(
                Outcome.DUPLICATE, booking.id, existing, "already recorded"
            )

        await self._confirm_charge(request, booking)
        return await self._record(
            booking,
            request.payment_type,
            request.amount,
            request.payment_method,
            request.payment_reference,
        )

    async def _confirm_charge(self, request: PaymentProcessRequest, booking: Booking) -> None:
        reference = request.payment_reference
        if reference.startswith(PAYMENT_INTENT_PREFIX):
            charge = await self.gateway.get_payment_intent(reference)
        elif reference.startswith(SOURCE_PREFIX):
            charge = await self.gateway.get_source(reference)
        else:
            raise ValidationError(
                "paymentReference must be a PayMongo payment intent or source id",
                reference=reference,
            )

        metadata = charge.metadata or {}
        charged_booking = metadata.get("booking_id") or metadata.get("bookingId")
        problems = []
        if charge.status not in CONFIRMED_CHARGE_STATUSES:
            problems.append(f"status is {charge.status}")
        if charge.amount != request.amount:
            problems.append(f"amount is {charge.amount}, not {request.amount}")
        if str(charged_booking) != str(booking.id):
            problems.append("charge belongs to another booking")
        if problems:
            logger.warning(
                "Payment {} for booking {} not confirmed: {}",
                reference,
                booking.id,
                "; ".join(problems),
            )
            raise ValidationError(
                f"Payment {reference} is not confirmed: {'; '.join(problems)}",
                reference=reference,
            )

    # -----------------------------------------------------------------------
    # Webhook path
    # -----------------------------------------------------------------------

    async def handle_event(self, event: GatewayEvent) -> ReconciliationResult:
        """
        Reconcile one gateway event. Business rejections are logged and
        reported as IGNORED so the transport still gets its acknowledgement.
        """
        handlers = {
            GatewayEventType.PAYMENT_PAID: self._on_payment_paid,
            GatewayEventType.PAYMENT_FAILED: self._on_payment_failed,
            GatewayEventType.SOURCE_CHARGEABLE: self._on_source_chargeable,
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled gateway event type {} ({})", event.raw_type, event.event_id)
            return ReconciliationResult(Outcome.IGNORED, reason="unhandled event type")

        booking = await self._resolve_booking(event)
        if booking is None:
            return ReconciliationResult(
                Outcome.IGNORED, event.booking_id, reason="booking not resolvable"
            )

        try:
            return await handler(event, booking)
        except BookingServiceError as exc:
            logger.warning(
                "Gateway event {} ({}) for booking {} rejected: {}",
                event.event_id,
                event.type,
                booking.id,
                exc.message,
            )
            return ReconciliationResult(Outcome.IGNORED, booking.id, reason=exc.message)

    async def _resolve_booking(self, event: GatewayEvent) -> Booking | None:
        booking_id = event.booking_id
        if booking_id is None:
            logger.warning(
                "Gateway event {} ({}) has no usable booking_id in metadata: {}",
                event.event_id,
                event.type,
                event.metadata,
            )
            return None
        booking = await Booking.get_or_none(id=booking_id)
        if booking is None:
            logger.warning(
                "Gateway event {} references unknown booking {}", event.event_id, booking_id
            )
        return booking

    async def _on_payment_paid(
        self, event: GatewayEvent, booking: Booking
    ) -> ReconciliationResult:
        existing = await self.ledger.find_by_reference(booking.id, event.reference)
        if existing is not None:
            logger.info(
                "Duplicate delivery of {} for booking {} (receipt {})",
                event.reference,
                booking.id,
                existing.receipt_number,
            )
            return ReconciliationResult(Outcome.DUPLICATE, booking.id, existing)

        total_paid = await self.ledger.calculate_total_paid(booking.id)
        payment_type = classify_payment(event.amount, total_paid, booking.total_amount)
        if event.payment_type and event.payment_type != payment_type:
            logger.warning(
                "Booking {}: gateway metadata says {} but amounts classify as {}",
                booking.id,
                event.payment_type,
                payment_type,
            )
        return await self._record(
            booking, payment_type, event.amount, event.payment_method, event.reference
        )

    async def _on_payment_failed(
        self, event: GatewayEvent, booking: Booking
    ) -> ReconciliationResult:
        async with in_transaction():
            locked = await Booking.filter(id=booking.id).select_for_update().first()
            if locked is None:
                raise NotFoundError("Booking not found", booking_id=booking.id)
            if locked.status in TERMINAL_STATUSES:
                return ReconciliationResult(
                    Outcome.IGNORED, booking.id, reason=f"booking is {locked.status}"
                )
            await self.bookings.record_note(
                locked,
                SubStatus.PAYMENT_FAILED,
                {
                    "message": event.failure_message or "Payment failed",
                    "reference": event.reference,
                    "amount": event.amount,
                },
            )
        logger.info(
            "Payment {} failed for booking {}: {}",
            event.reference,
            booking.id,
            event.failure_message,
        )
        return ReconciliationResult(Outcome.FAILURE_NOTED, booking.id)

    async def _on_source_chargeable(
        self, event: GatewayEvent, booking: Booking
    ) -> ReconciliationResult:
        existing = await self.ledger.find_by_reference(booking.id, event.reference)
        if existing is not None:
            return ReconciliationResult(Outcome.DUPLICATE, booking.id, existing)

        metadata = {str(k): str(v) for k, v in event.metadata.items()}
        try:
            payment = await self.gateway.create_payment(
                event.resource_id,
                event.amount,
                currency=event.currency or booking.currency,
                description=f"Booking {booking.id}",
                metadata=metadata,
            )
        except GatewayError as exc:
            logger.warning(
                "Charging source {} for booking {} failed: {}",
                event.resource_id,
                booking.id,
                exc.message,
            )
            return ReconciliationResult(Outcome.IGNORED, booking.id, reason=exc.message)

        logger.info(
            "Source {} charged as payment {} for booking {}",
            event.resource_id,
            payment.id,
            booking.id,
        )
        return ReconciliationResult(Outcome.CHARGE_REQUESTED, booking.id)


reconciliation_handler = ReconciliationHandler()
