from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class BookingStatus(StrEnum):
    REQUEST = "request"  # couple asked, vendor may quote
    APPROVED = "approved"  # quote accepted, awaiting first payment
    DECLINED = "declined"  # vendor refused the request
    CANCELLED = "cancelled"  # cancelled by either side or admin
    DOWNPAYMENT = "downpayment"  # deposit received
    FULLY_PAID = "fully_paid"  # total amount received
    COMPLETED = "completed"  # both sides confirmed the service happened


TERMINAL_STATUSES = frozenset(
    {BookingStatus.DECLINED, BookingStatus.CANCELLED, BookingStatus.COMPLETED}
)
PAID_STATUSES = frozenset({BookingStatus.FULLY_PAID, BookingStatus.COMPLETED})


class PaymentType(StrEnum):
    DEPOSIT = "deposit"
    BALANCE = "balance"
    FULL_PAYMENT = "full_payment"


class Booking(Model):
    id = fields.UUIDField(primary_key=True)

    couple_id = fields.UUIDField(db_index=True)
    vendor_id = fields.UUIDField(db_index=True)
    service_id = fields.UUIDField(null=True)
    service_name = fields.CharField(max_length=255, null=True)

    event_date = fields.DateField()
    event_time = fields.TimeField(null=True)
    event_location = fields.CharField(max_length=500, null=True)
    special_requests = fields.TextField(null=True)

    # minor currency units (centavos)
    total_amount = fields.BigIntField()
    deposit_amount = fields.BigIntField()
    currency = fields.CharField(max_length=3, default="PHP")

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.REQUEST)
    status_note = fields.TextField(null=True)  # encoded by app.status_codec

    vendor_completed = fields.BooleanField(default=False)
    vendor_completed_at = fields.DatetimeField(null=True)
    couple_completed = fields.BooleanField(default=False)
    couple_completed_at = fields.DatetimeField(null=True)
    fully_completed = fields.BooleanField(default=False)
    fully_completed_at = fields.DatetimeField(null=True)
    completion_notes = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    receipts: fields.ReverseRelation["Receipt"]

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class Receipt(Model):
    id = fields.IntField(primary_key=True)  # monotonic, feeds receipt_number
    receipt_number = fields.CharField(max_length=32, unique=True, null=True)

    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="receipts", on_delete=fields.RESTRICT
    )
    couple_id = fields.UUIDField(db_index=True)
    vendor_id = fields.UUIDField(db_index=True)

    payment_type = fields.CharEnumField(PaymentType)
    payment_method = fields.CharField(max_length=50)
    amount_paid = fields.BigIntField()
    total_amount = fields.BigIntField()  # booking total at the time of payment
    currency = fields.CharField(max_length=3, default="PHP")

    external_reference = fields.CharField(max_length=255)  # idempotency key

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        table = "receipts"
        ordering = ["-created_at"]
        unique_together = (("booking", "external_reference"),)


class VendorEarning(Model):
    """Vendor credit written when a booking completes, summing its receipts."""

    id = fields.IntField(primary_key=True)
    transaction_number = fields.CharField(max_length=32, unique=True, null=True)

    booking: fields.OneToOneRelation[Booking] = fields.OneToOneField(
        "models.Booking", related_name="earning", on_delete=fields.RESTRICT
    )
    vendor_id = fields.UUIDField(db_index=True)

    amount = fields.BigIntField()
    currency = fields.CharField(max_length=3, default="PHP")
    receipt_numbers = fields.JSONField(default=list)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        table = "vendor_earnings"
        ordering = ["-created_at"]
