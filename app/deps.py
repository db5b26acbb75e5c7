from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol
from urllib.parse import unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.errors import ForbiddenError
from app.schemas import BookingResponse, CompletionSide, ReceiptResponse, UnmarkSide
from app.scopes import BookingScope, PaymentScope, ReceiptScope
from app.transitions import Actor


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin:scopes" in self.scopes

    @property
    def is_booking_admin(self) -> bool:
        return self.is_admin or any(
            s in self.scopes
            for s in (BookingScope.ADMIN, BookingScope.ADMIN_READ, BookingScope.ADMIN_WRITE)
        )


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the identity headers injected by the API gateway after it validated
    the token. Only valid behind that gateway.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_write_booking = require_scopes(BookingScope.WRITE)
can_pay = require_scopes(PaymentScope.WRITE)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (couple), manage them (vendor) or is admin.
    - bookings:read   → couple sees own bookings
    - bookings:manage → vendor sees bookings for their services
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    if not (has_read or has_manage or current_user.is_booking_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (couples), "
                f"'{BookingScope.MANAGE}' (vendors), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


async def can_read_receipts(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not (
        ReceiptScope.READ in current_user.scopes
        or ReceiptScope.ADMIN_READ in current_user.scopes
        or current_user.is_admin
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing required scopes: {ReceiptScope.READ}",
        )
    return current_user


# ---------------------------------------------------------------------------
# Party checks: who is the caller with respect to a given booking
# ---------------------------------------------------------------------------


class _HasParties(Protocol):
    couple_id: UUID
    vendor_id: UUID


def resolve_actor(user: CurrentUser, booking: _HasParties) -> Actor:
    """Map the caller onto a transition-table actor for `booking`."""
    if user.is_booking_admin:
        return Actor.ADMIN
    if user.id == booking.couple_id:
        return Actor.COUPLE
    if user.id == booking.vendor_id:
        return Actor.VENDOR
    raise ForbiddenError("You are not a party to this booking")


def assert_completion_side(
    user: CurrentUser, booking: _HasParties, side: CompletionSide | UnmarkSide
) -> None:
    """Couples and vendors may only flag their own side; admins may flag any."""
    actor = resolve_actor(user, booking)
    if actor == Actor.ADMIN or actor.value == side.value:
        return
    raise ForbiddenError(
        f"A {actor.value} cannot act on the {side.value} completion flag",
        side=side.value,
    )


def can_view_receipts_of(user: CurrentUser, party_id: UUID) -> None:
    if user.id != party_id and not (
        ReceiptScope.ADMIN_READ in user.scopes or user.is_admin
    ):
        raise ForbiddenError("You can only view your own receipts")


# ---------------------------------------------------------------------------
# NotificationsClient: thin async wrapper around the notifications-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """
    Thin async wrapper around the notifications-ms internal API.
    Runs as a background task after the response is sent. Failures are
    logged and swallowed: a lost notification must not fail the booking flow.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def _send(self, event: str, recipients: list[UUID], data: dict[str, Any]) -> bool:
        try:
            resp = await self._client.post(
                "/notifications/events",
                json={
                    "event": event,
                    "recipients": [str(r) for r in recipients],
                    "data": data,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Notification {} not delivered: {}", event, exc)
            return False
        if resp.status_code >= 400:
            logger.warning(
                "Notification {} rejected by notifications-ms: {}", event, resp.status_code
            )
            return False
        return True

    async def booking_status_changed(
        self, booking: BookingResponse, previous_status: str | None = None
    ) -> bool:
        return await self._send(
            "booking.status_changed",
            [booking.couple_id, booking.vendor_id],
            {
                "booking_id": str(booking.id),
                "previous_status": previous_status,
                "status": booking.status.value,
                "extended_status": booking.extended_status,
            },
        )

    async def payment_received(self, receipt: ReceiptResponse) -> bool:
        return await self._send(
            "booking.payment_received",
            [receipt.couple_id, receipt.vendor_id],
            {
                "booking_id": str(receipt.booking_id),
                "receipt_number": receipt.receipt_number,
                "payment_type": receipt.payment_type.value,
                "amount_paid": receipt.amount_paid,
                "currency": receipt.currency,
            },
        )


_notifications_client = NotificationsClient()


def get_notifications_client() -> NotificationsClient:
    return _notifications_client
