"""
Two-sided completion: vendor and couple each confirm the service happened.
The booking becomes `completed` only once both flags are set.

Flag flips and the promotion are conditional UPDATEs inside one transaction
on a locked row, so when both sides race exactly one of them promotes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from app.errors import AlreadyMarkedError, NotFoundError, PreconditionError
from app.ledger import receipt_ledger
from app.models import PAID_STATUSES, Booking, BookingStatus
from app.schemas import CompletionResult, CompletionSide, CompletionStatus, UnmarkSide
from app.status_codec import BookingState, SubStatus, encode_state


def _completed_note(notes: str | None) -> str | None:
    details = {"message": notes} if notes else {}
    return encode_state(BookingState(BookingStatus.COMPLETED, None, details))[1]


class CompletionGate:
    async def mark_completed(
        self, booking_id: UUID, side: CompletionSide, notes: str | None = None
    ) -> CompletionResult:
        flag = f"{side.value}_completed"
        now = datetime.now(UTC)

        async with in_transaction():
            inst = await Booking.filter(id=booking_id).select_for_update().first()
            if inst is None:
                raise NotFoundError("Booking not found", booking_id=booking_id)
            if inst.status not in PAID_STATUSES:
                raise PreconditionError(
                    "Booking must be fully paid before marking as completed",
                    current_status=inst.status,
                )

            changes = {flag: True, f"{flag}_at": now}
            if notes:
                changes["completion_notes"] = notes
            flipped = await Booking.filter(id=booking_id, **{flag: False}).update(**changes)
            if not flipped:
                other = "couple" if side == CompletionSide.VENDOR else "vendor"
                raise AlreadyMarkedError(
                    f"{side.value.capitalize()} has already marked this booking as completed",
                    waiting_for=other,
                )

            promoted = bool(
                await Booking.filter(
                    id=booking_id,
                    vendor_completed=True,
                    couple_completed=True,
                    status__not=BookingStatus.COMPLETED,
                ).update(
                    status=BookingStatus.COMPLETED,
                    status_note=_completed_note(notes),
                    fully_completed=True,
                    fully_completed_at=now,
                )
            )
            earning = await receipt_ledger.credit_vendor(inst) if promoted else None
            await inst.refresh_from_db()

        if promoted:
            logger.info("Booking {} completed: both sides confirmed", booking_id)
        else:
            logger.info("Booking {} marked completed by {}", booking_id, side)

        return CompletionResult(
            message=f"{side.value.capitalize()} marked booking as completed",
            promoted=promoted,
            completion=CompletionStatus.from_model(inst),
            earning_transaction=earning.transaction_number if earning else None,
        )

    async def unmark_completed(
        self, booking_id: UUID, side: UnmarkSide, reason: str | None = None
    ) -> CompletionStatus:
        """Clear completion flag(s); a completed booking falls back to fully_paid."""
        sides = (
            [CompletionSide.VENDOR, CompletionSide.COUPLE]
            if side == UnmarkSide.BOTH
            else [CompletionSide(side.value)]
        )
        changes: dict = {"fully_completed": False, "fully_completed_at": None}
        for s in sides:
            changes[f"{s.value}_completed"] = False
            changes[f"{s.value}_completed_at"] = None
        if reason:
            changes["completion_notes"] = reason

        async with in_transaction():
            inst = await Booking.filter(id=booking_id).select_for_update().first()
            if inst is None:
                raise NotFoundError("Booking not found", booking_id=booking_id)

            await Booking.filter(id=booking_id).update(**changes)
            details = {"reason": reason} if reason else {}
            reverted_status, reverted_note = encode_state(
                BookingState(BookingStatus.FULLY_PAID, SubStatus.FULLY_PAID, details)
            )
            reverted = await Booking.filter(
                id=booking_id, status=BookingStatus.COMPLETED
            ).update(status=reverted_status, status_note=reverted_note)
            await inst.refresh_from_db()

        if reverted:
            logger.info("Booking {} reverted from completed ({})", booking_id, side)
        return CompletionStatus.from_model(inst)

    async def completion_status(self, booking_id: UUID) -> CompletionStatus:
        inst = await Booking.get_or_none(id=booking_id)
        if inst is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return CompletionStatus.from_model(inst)


completion_gate = CompletionGate()
