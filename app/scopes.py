from enum import StrEnum


class BookingScope(StrEnum):
    # Couple scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # request a booking, accept a quote
    CANCEL = "bookings:cancel"  # cancel own booking

    # Vendor scopes
    MANAGE = "bookings:manage"  # quote / approve / decline bookings for own services

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"


class PaymentScope(StrEnum):
    WRITE = "payments:write"  # start a checkout, confirm a payment


class ReceiptScope(StrEnum):
    READ = "receipts:read"  # own receipts (couple or vendor)
    ADMIN_READ = "admin:receipts:read"

