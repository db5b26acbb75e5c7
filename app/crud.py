from __future__ import annotations

from datetime import date, time
from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from app import settings
from app.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.ledger import receipt_ledger
from app.models import Booking, BookingStatus
from app.schemas import (
    BookingFilters,
    BookingResponse,
    BookingStatusUpdate,
    PaymentSummary,
)
from app.status_codec import BookingState, SubStatus, decode_state, encode_state
from app.transitions import Actor, assert_transition


def default_deposit(total_amount: int) -> int:
    return max(1, round(total_amount * settings.DEFAULT_DEPOSIT_RATIO))


def _validate_amounts(total_amount: int, deposit_amount: int) -> None:
    if total_amount <= 0:
        raise ValidationError("total_amount must be positive", total_amount=total_amount)
    if deposit_amount <= 0 or deposit_amount > total_amount:
        raise ValidationError(
            "deposit_amount must be positive and not exceed total_amount",
            total_amount=total_amount,
            deposit_amount=deposit_amount,
        )


class BookingCRUD:
    async def create_booking(
        self,
        couple_id: UUID,
        vendor_id: UUID | None,
        event_date: date | None,
        total_amount: int | None,
        deposit_amount: int | None = None,
        service_id: UUID | None = None,
        service_name: str | None = None,
        event_time: time | None = None,
        event_location: str | None = None,
        special_requests: str | None = None,
        currency: str = settings.DEFAULT_CURRENCY,
    ) -> BookingResponse:
        """Persist a new booking in `request` status."""
        if vendor_id is None or event_date is None or total_amount is None:
            missing = [
                name
                for name, value in (
                    ("vendor_id", vendor_id),
                    ("event_date", event_date),
                    ("total_amount", total_amount),
                )
                if value is None
            ]
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", missing=",".join(missing)
            )

        if deposit_amount is None:
            deposit_amount = default_deposit(total_amount)
        _validate_amounts(total_amount, deposit_amount)

        inst = await Booking.create(
            couple_id=couple_id,
            vendor_id=vendor_id,
            service_id=service_id,
            service_name=service_name,
            event_date=event_date,
            event_time=event_time,
            event_location=event_location,
            special_requests=special_requests,
            total_amount=total_amount,
            deposit_amount=deposit_amount,
            currency=currency,
        )
        logger.info(
            "Booking {} requested: couple={} vendor={} total={}",
            inst.id,
            couple_id,
            vendor_id,
            total_amount,
        )
        return BookingResponse.from_model(inst)

    async def get_model(self, booking_id: UUID) -> Booking:
        inst = await Booking.get_or_none(id=booking_id)
        if inst is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return inst

    async def get_booking(
        self,
        booking_id: UUID,
        couple_id: UUID | None = None,
        vendor_id: UUID | None = None,
    ) -> BookingResponse | None:
        qs = Booking.filter(id=booking_id)
        if couple_id is not None:
            qs = qs.filter(couple_id=couple_id)
        if vendor_id is not None:
            qs = qs.filter(vendor_id=vendor_id)

        inst = await qs.first()
        if not inst:
            return None
        return BookingResponse.from_model(inst)

    async def list_bookings(
        self,
        filters: BookingFilters,
        couple_id: UUID | None = None,
        vendor_id: UUID | None = None,
    ) -> list[BookingResponse]:
        qs = Booking.all()

        if couple_id is not None:
            qs = qs.filter(couple_id=couple_id)
        if vendor_id is not None:
            qs = qs.filter(vendor_id=vendor_id)
        if filters.couple_id is not None:
            qs = qs.filter(couple_id=filters.couple_id)
        if filters.vendor_id is not None:
            qs = qs.filter(vendor_id=filters.vendor_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        bookings = await qs
        return [BookingResponse.from_model(b) for b in bookings]

    async def update_status(
        self,
        booking_id: UUID,
        payload: BookingStatusUpdate,
        actor: Actor,
    ) -> BookingResponse:
        """
        Move a booking to `payload.status` on behalf of `actor`.

        The row is locked for the duration of the check-and-write, so the
        status and its note commit together or not at all.
        """
        async with in_transaction():
            inst = await Booking.filter(id=booking_id).select_for_update().first()
            if inst is None:
                raise NotFoundError("Booking not found", booking_id=booking_id)
            await self.apply_transition(inst, payload.to_state(), actor)
        return BookingResponse.from_model(inst)

    async def apply_transition(
        self, inst: Booking, state: BookingState, actor: Actor
    ) -> None:
        """
        Validate and write a transition on an already locked row.
        Must run inside the caller's transaction.
        """
        previous = inst.status
        assert_transition(previous, actor, state.status)
        if state.status == previous and state.sub_status is None:
            raise InvalidTransitionError(
                f"Booking is already '{previous}'; a sub-status is required",
                current=previous,
            )

        update_fields = ["status", "status_note", "updated_at"]
        if state.sub_status == SubStatus.QUOTE_SENT and "total_amount" in state.details:
            total = state.details["total_amount"]
            deposit = state.details.get("deposit_amount") or default_deposit(total)
            _validate_amounts(total, deposit)
            inst.total_amount, inst.deposit_amount = total, deposit
            update_fields += ["total_amount", "deposit_amount"]

        inst.status, inst.status_note = encode_state(state)
        await inst.save(update_fields=update_fields)
        logger.info(
            "Booking {} {} -> {} ({}) by {}",
            inst.id,
            previous,
            inst.status,
            state.extended_status,
            actor,
        )

    async def record_note(
        self, inst: Booking, sub_status: SubStatus | None, details: dict
    ) -> None:
        """Attach a sub-status note without touching the coarse status."""
        state = BookingState(BookingStatus(inst.status), sub_status, details)
        _, inst.status_note = encode_state(state)
        await inst.save(update_fields=["status_note", "updated_at"])

    def state_of(self, inst: Booking) -> BookingState:
        return decode_state(inst.status, inst.status_note)

    async def payment_summary(self, booking_id: UUID) -> PaymentSummary:
        inst = await self.get_model(booking_id)
        receipts = await receipt_ledger.list_for_booking(booking_id)
        total_paid = sum(r.amount_paid for r in receipts)
        return PaymentSummary(
            booking_id=inst.id,
            status=inst.status,
            extended_status=self.state_of(inst).extended_status,
            total_amount=inst.total_amount,
            deposit_amount=inst.deposit_amount,
            total_paid=total_paid,
            remaining_balance=inst.total_amount - total_paid,
            receipts=receipts,
        )


booking_crud = BookingCRUD()
