"""
Two-sided completion against an in-memory SQLite database.
"""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from app.completion import completion_gate
from app.errors import AlreadyMarkedError, NotFoundError, PreconditionError
from app.models import Booking, BookingStatus, PaymentType, VendorEarning
from app.schemas import CompletionSide, UnmarkSide
from app.status_codec import SubStatus, decode_state

from .factories import DEPOSIT_AMOUNT, TOTAL_AMOUNT, create_booking_row, create_receipt_row

pytestmark = pytest.mark.anyio


def _assert_completion_invariant(booking: Booking) -> None:
    both = booking.vendor_completed and booking.couple_completed
    assert (booking.status == BookingStatus.COMPLETED) == (both and booking.fully_completed)


class TestMarkCompleted:
    async def test_vendor_then_couple_completes_the_booking(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)

        first = await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        assert first.promoted is False
        assert first.completion.vendor_completed is True
        assert first.completion.status == BookingStatus.FULLY_PAID
        assert first.completion.waiting_for == "couple"

        second = await completion_gate.mark_completed(
            booking.id, CompletionSide.COUPLE, notes="Lovely photos"
        )
        assert second.promoted is True
        assert second.completion.status == BookingStatus.COMPLETED
        assert second.completion.fully_completed is True
        assert second.completion.waiting_for is None

        await booking.refresh_from_db()
        _assert_completion_invariant(booking)
        assert booking.fully_completed_at is not None
        assert booking.completion_notes == "Lovely photos"
        state = decode_state(booking.status, booking.status_note)
        assert state.extended_status == "completed"
        assert state.message == "Lovely photos"

    async def test_unpaid_booking_cannot_be_completed(self, db):
        booking = await create_booking_row(status=BookingStatus.DOWNPAYMENT)
        with pytest.raises(PreconditionError):
            await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        await booking.refresh_from_db()
        assert booking.vendor_completed is False

    async def test_same_side_twice_is_rejected(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        with pytest.raises(AlreadyMarkedError) as exc_info:
            await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        assert exc_info.value.status_code == 409

    async def test_unknown_booking(self, db):
        with pytest.raises(NotFoundError):
            await completion_gate.mark_completed(uuid4(), CompletionSide.COUPLE)

    async def test_concurrent_marks_promote_exactly_once(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        results = await asyncio.gather(
            completion_gate.mark_completed(booking.id, CompletionSide.VENDOR),
            completion_gate.mark_completed(booking.id, CompletionSide.COUPLE),
        )
        assert sorted(r.promoted for r in results) == [False, True]

        await booking.refresh_from_db()
        assert booking.status == BookingStatus.COMPLETED
        _assert_completion_invariant(booking)


class TestUnmarkCompleted:
    async def test_unmark_reverts_completed_to_fully_paid(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)

        status = await completion_gate.unmark_completed(
            booking.id, UnmarkSide.VENDOR, reason="Album not delivered"
        )
        assert status.status == BookingStatus.FULLY_PAID
        assert status.vendor_completed is False
        assert status.couple_completed is True
        assert status.fully_completed is False
        assert status.waiting_for == "vendor"

        await booking.refresh_from_db()
        _assert_completion_invariant(booking)
        state = decode_state(booking.status, booking.status_note)
        assert state.sub_status == SubStatus.FULLY_PAID
        assert state.details["reason"] == "Album not delivered"

    async def test_unmark_both_is_idempotent(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)

        first = await completion_gate.unmark_completed(booking.id, UnmarkSide.BOTH)
        second = await completion_gate.unmark_completed(booking.id, UnmarkSide.BOTH)
        assert first.waiting_for == second.waiting_for == "both"
        assert second.status == BookingStatus.FULLY_PAID

    async def test_side_can_mark_again_after_unmark(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        await completion_gate.unmark_completed(booking.id, UnmarkSide.VENDOR)
        result = await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        assert result.completion.vendor_completed is True

    async def test_unknown_booking(self, db):
        with pytest.raises(NotFoundError):
            await completion_gate.unmark_completed(uuid4(), UnmarkSide.BOTH)


class TestCompletionStatus:
    async def test_waiting_for_both_initially(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        status = await completion_gate.completion_status(booking.id)
        assert status.waiting_for == "both"
        assert status.both_completed is False

    async def test_waiting_for_vendor_after_couple(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)
        status = await completion_gate.completion_status(booking.id)
        assert status.waiting_for == "vendor"


class TestVendorCredit:
    async def _paid_booking(self) -> Booking:
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await create_receipt_row(booking, DEPOSIT_AMOUNT, "pi_dep", PaymentType.DEPOSIT)
        await create_receipt_row(
            booking, TOTAL_AMOUNT - DEPOSIT_AMOUNT, "pi_bal", PaymentType.BALANCE
        )
        return booking

    async def test_promotion_credits_the_vendor_from_receipts(self, db):
        booking = await self._paid_booking()
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        result = await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)

        earning = await VendorEarning.get(booking_id=booking.id)
        assert result.earning_transaction == earning.transaction_number
        assert earning.transaction_number.startswith("TXN-")
        assert earning.vendor_id == booking.vendor_id
        assert earning.amount == TOTAL_AMOUNT
        assert len(earning.receipt_numbers) == 2

    async def test_first_mark_credits_nothing(self, db):
        booking = await self._paid_booking()
        result = await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        assert result.earning_transaction is None
        assert await VendorEarning.filter(booking_id=booking.id).count() == 0

    async def test_concurrent_marks_credit_once(self, db):
        booking = await self._paid_booking()
        results = await asyncio.gather(
            completion_gate.mark_completed(booking.id, CompletionSide.VENDOR),
            completion_gate.mark_completed(booking.id, CompletionSide.COUPLE),
        )
        assert [r.earning_transaction is not None for r in results].count(True) == 1
        assert await VendorEarning.filter(booking_id=booking.id).count() == 1

    async def test_promoting_again_after_unmark_does_not_credit_twice(self, db):
        booking = await self._paid_booking()
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)
        await completion_gate.unmark_completed(booking.id, UnmarkSide.COUPLE)

        again = await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)
        assert again.promoted is True
        assert again.earning_transaction is None
        assert await VendorEarning.filter(booking_id=booking.id).count() == 1

    async def test_completion_without_receipts_credits_nothing(self, db):
        booking = await create_booking_row(status=BookingStatus.FULLY_PAID)
        await completion_gate.mark_completed(booking.id, CompletionSide.VENDOR)
        result = await completion_gate.mark_completed(booking.id, CompletionSide.COUPLE)
        assert result.promoted is True
        assert result.earning_transaction is None
