"""
Payment ledger: append-only receipts per booking.

A receipt is written once per gateway-confirmed charge and never updated
afterwards. `(booking, external_reference)` is unique, so concurrent writers
racing on the same gateway reference end with one receipt and one
DuplicateReceiptError.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from app.errors import (
    DuplicateReceiptError,
    InsufficientAmountError,
    NotFoundError,
    OverpaymentError,
    ValidationError,
)
from app.models import Booking, PaymentType, Receipt, VendorEarning
from app.schemas import ReceiptPage, ReceiptResponse, ReceiptStats

OnRecorded = Callable[[Booking, Receipt], Awaitable[None]]


def format_receipt_number(receipt: Receipt) -> str:
    return f"RCP-{receipt.created_at:%Y%m%d}-{receipt.id:06d}"


def format_transaction_number(earning: VendorEarning) -> str:
    return f"TXN-{earning.created_at:%Y%m%d}-{earning.id:06d}"


def minimum_for(payment_type: PaymentType, booking: Booking, total_paid: int) -> int:
    """Smallest amount accepted for this payment type given what is already paid."""
    if payment_type == PaymentType.DEPOSIT:
        return booking.deposit_amount
    if payment_type == PaymentType.BALANCE:
        return booking.total_amount - total_paid
    return booking.total_amount


class ReceiptLedger:
    async def calculate_total_paid(self, booking_id: UUID) -> int:
        amounts = await Receipt.filter(booking_id=booking_id).values_list(
            "amount_paid", flat=True
        )
        return sum(amounts)

    async def find_by_reference(
        self, booking_id: UUID, external_reference: str
    ) -> Receipt | None:
        return await Receipt.get_or_none(
            booking_id=booking_id, external_reference=external_reference
        )

    async def create_deposit_receipt(
        self,
        booking_id: UUID,
        couple_id: UUID,
        vendor_id: UUID,
        amount: int,
        method: str,
        external_ref: str,
        *,
        on_recorded: OnRecorded | None = None,
    ) -> Receipt:
        return await self._record(
            PaymentType.DEPOSIT,
            booking_id, couple_id, vendor_id, amount, method, external_ref, on_recorded,
        )

    async def create_balance_receipt(
        self,
        booking_id: UUID,
        couple_id: UUID,
        vendor_id: UUID,
        amount: int,
        method: str,
        external_ref: str,
        *,
        on_recorded: OnRecorded | None = None,
    ) -> Receipt:
        return await self._record(
            PaymentType.BALANCE,
            booking_id, couple_id, vendor_id, amount, method, external_ref, on_recorded,
        )

    async def create_full_payment_receipt(
        self,
        booking_id: UUID,
        couple_id: UUID,
        vendor_id: UUID,
        amount: int,
        method: str,
        external_ref: str,
        *,
        on_recorded: OnRecorded | None = None,
    ) -> Receipt:
        return await self._record(
            PaymentType.FULL_PAYMENT,
            booking_id, couple_id, vendor_id, amount, method, external_ref, on_recorded,
        )

    async def create_receipt(
        self,
        payment_type: PaymentType,
        booking_id: UUID,
        couple_id: UUID,
        vendor_id: UUID,
        amount: int,
        method: str,
        external_ref: str,
        *,
        on_recorded: OnRecorded | None = None,
    ) -> Receipt:
        """Dispatch to the create_*_receipt operation matching `payment_type`."""
        create = {
            PaymentType.DEPOSIT: self.create_deposit_receipt,
            PaymentType.BALANCE: self.create_balance_receipt,
            PaymentType.FULL_PAYMENT: self.create_full_payment_receipt,
        }[payment_type]
        return await create(
            booking_id, couple_id, vendor_id, amount, method, external_ref,
            on_recorded=on_recorded,
        )

    async def _record(
        self,
        payment_type: PaymentType,
        booking_id: UUID,
        couple_id: UUID,
        vendor_id: UUID,
        amount: int,
        method: str,
        external_ref: str,
        on_recorded: OnRecorded | None,
    ) -> Receipt:
        if not external_ref:
            raise ValidationError("A gateway payment reference is required")
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", amount=amount)

        # Replays must not be re-validated against the totals they already moved.
        existing = await self.find_by_reference(booking_id, external_ref)
        if existing is not None:
            raise DuplicateReceiptError(existing, external_ref)

        try:
            async with in_transaction():
                booking = (
                    await Booking.filter(id=booking_id).select_for_update().first()
                )
                if booking is None:
                    raise NotFoundError("Booking not found", booking_id=booking_id)
                if booking.couple_id != couple_id or booking.vendor_id != vendor_id:
                    raise ValidationError(
                        "Payment parties do not match the booking", booking_id=booking_id
                    )

                existing = await self.find_by_reference(booking_id, external_ref)
                if existing is not None:
                    raise DuplicateReceiptError(existing, external_ref)

                total_paid = await self.calculate_total_paid(booking_id)
                minimum = minimum_for(payment_type, booking, total_paid)
                if amount < minimum:
                    raise InsufficientAmountError(
                        f"{payment_type} payment of {amount} is below the required {minimum}",
                        payment_type=payment_type,
                        amount=amount,
                        required=minimum,
                    )
                remaining = booking.total_amount - total_paid
                if amount > remaining:
                    raise OverpaymentError(
                        f"Payment of {amount} exceeds the remaining balance of {remaining}",
                        amount=amount,
                        remaining=remaining,
                    )

                receipt = await Receipt.create(
                    booking_id=booking_id,
                    couple_id=couple_id,
                    vendor_id=vendor_id,
                    payment_type=payment_type,
                    payment_method=method,
                    amount_paid=amount,
                    total_amount=booking.total_amount,
                    currency=booking.currency,
                    external_reference=external_ref,
                )
                receipt.receipt_number = format_receipt_number(receipt)
                await receipt.save(update_fields=["receipt_number"])

                if on_recorded is not None:
                    await on_recorded(booking, receipt)
        except IntegrityError:
            # lost the race against another path recording the same reference
            existing = await self.find_by_reference(booking_id, external_ref)
            if existing is None:
                raise
            raise DuplicateReceiptError(existing, external_ref) from None

        logger.info(
            "Receipt {} recorded: booking={} type={} amount={} ref={}",
            receipt.receipt_number,
            booking_id,
            payment_type,
            amount,
            external_ref,
        )
        return receipt

    async def credit_vendor(self, booking: Booking) -> VendorEarning | None:
        """
        Credit the vendor with everything paid on `booking`. Runs inside the
        transaction that promotes the booking to completed. A booking is
        credited at most once; promoting again after an unmark credits nothing.
        """
        if await VendorEarning.filter(booking_id=booking.id).exists():
            logger.info("Booking {} already credited to vendor {}", booking.id, booking.vendor_id)
            return None

        amount = await self.calculate_total_paid(booking.id)
        if amount <= 0:
            logger.warning("Booking {} completed with nothing paid, no vendor credit", booking.id)
            return None

        receipt_numbers = await Receipt.filter(booking_id=booking.id).order_by("id").values_list(
            "receipt_number", flat=True
        )
        earning = await VendorEarning.create(
            booking_id=booking.id,
            vendor_id=booking.vendor_id,
            amount=amount,
            currency=booking.currency,
            receipt_numbers=list(receipt_numbers),
        )
        earning.transaction_number = format_transaction_number(earning)
        await earning.save(update_fields=["transaction_number"])

        logger.info(
            "Vendor {} credited {} for booking {} ({})",
            booking.vendor_id,
            amount,
            booking.id,
            earning.transaction_number,
        )
        return earning

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_receipt(self, id_or_number: str) -> ReceiptResponse | None:
        query = Q(receipt_number=id_or_number)
        if id_or_number.isdigit():
            query |= Q(id=int(id_or_number))
        inst = await Receipt.filter(query).first()
        if not inst:
            return None
        return ReceiptResponse.from_model(inst)

    async def list_for_booking(self, booking_id: UUID) -> list[ReceiptResponse]:
        receipts = await Receipt.filter(booking_id=booking_id).order_by("id")
        return [ReceiptResponse.from_model(r) for r in receipts]

    async def _page(self, qs, page: int, page_size: int) -> ReceiptPage:
        total = await qs.count()
        receipts = await qs.order_by("-id").offset((page - 1) * page_size).limit(page_size)
        return ReceiptPage(
            receipts=[ReceiptResponse.from_model(r) for r in receipts],
            count=len(receipts),
            total=total,
            total_pages=math.ceil(total / page_size) if total else 0,
            current_page=page,
        )

    async def list_for_couple(
        self, couple_id: UUID, page: int = 1, page_size: int = 20
    ) -> ReceiptPage:
        return await self._page(Receipt.filter(couple_id=couple_id), page, page_size)

    async def list_for_vendor(
        self, vendor_id: UUID, page: int = 1, page_size: int = 20
    ) -> ReceiptPage:
        return await self._page(Receipt.filter(vendor_id=vendor_id), page, page_size)

    async def couple_stats(self, couple_id: UUID) -> ReceiptStats:
        rows = await Receipt.filter(couple_id=couple_id).values(
            "payment_type", "payment_method", "amount_paid"
        )
        stats = ReceiptStats(total_receipts=len(rows))
        for row in rows:
            payment_type = PaymentType(row["payment_type"])
            if payment_type == PaymentType.DEPOSIT:
                stats.deposit_payments += 1
            elif payment_type == PaymentType.BALANCE:
                stats.balance_payments += 1
            else:
                stats.full_payments += 1
            stats.total_amount_paid += row["amount_paid"]
            method = row["payment_method"]
            stats.by_payment_method[method] = stats.by_payment_method.get(method, 0) + 1
        return stats


receipt_ledger = ReceiptLedger()
