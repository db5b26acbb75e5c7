from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status

from app.completion import completion_gate
from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    NotificationsClient,
    assert_completion_side,
    can_read_or_manage_booking,
    can_write_booking,
    get_current_user,
    get_notifications_client,
    resolve_actor,
)
from app.errors import ForbiddenError, NotFoundError
from app.models import BookingStatus
from app.schemas import (
    BookingCreate,
    BookingFilters,
    BookingResponse,
    BookingStatusUpdate,
    CompletionResult,
    CompletionStatus,
    MarkCompletedRequest,
    PaymentSummary,
    UnmarkCompletedRequest,
)
from app.scopes import BookingScope
from app.transitions import Actor

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _visibility(current_user: CurrentUser) -> dict[str, UUID]:
    """
    Ownership filter for reads:
      admin                → no filter
      vendor (manage only) → bookings for their services
      otherwise            → the couple's own bookings
    """
    if current_user.is_booking_admin:
        return {}
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes
    if is_manager and not is_reader:
        return {"vendor_id": current_user.id}
    return {"couple_id": current_user.id}


async def _get_party_booking(booking_id: UUID, current_user: CurrentUser) -> BookingResponse:
    """Fetch a booking the caller is a party to (or any booking, for admins)."""
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    resolve_actor(current_user, booking)
    return booking


def _assert_transition_scope(
    actor: Actor, target: BookingStatus, current_user: CurrentUser
) -> None:
    """
    Scope required on top of the transition table:
      couple → cancelled : CANCEL
      couple → other     : WRITE
      vendor → any       : MANAGE
      admin  → any       : ADMIN or ADMIN_WRITE
    """
    scopes = current_user.scopes
    if actor == Actor.ADMIN:
        allowed = current_user.is_admin or BookingScope.ADMIN in scopes or (
            BookingScope.ADMIN_WRITE in scopes
        )
        required = BookingScope.ADMIN_WRITE
    elif actor == Actor.VENDOR:
        required = BookingScope.MANAGE
        allowed = required in scopes
    else:
        required = BookingScope.CANCEL if target == BookingStatus.CANCELLED else BookingScope.WRITE
        allowed = required in scopes

    if not allowed:
        raise ForbiddenError(
            f"Transitioning to '{target}' as {actor.value} requires '{required}' scope.",
            required=required,
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> list[BookingResponse]:
    return await booking_crud.list_bookings(filters=filters, **_visibility(current_user))


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(can_write_booking),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingResponse:
    booking = await booking_crud.create_booking(
        couple_id=current_user.id,
        **payload.model_dump(),
    )
    background_tasks.add_task(notifications.booking_status_changed, booking, None)
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> BookingResponse:
    booking = await booking_crud.get_booking(booking_id, **_visibility(current_user))
    if not booking:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    return booking


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingResponse:
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    actor = resolve_actor(current_user, booking)
    _assert_transition_scope(actor, payload.status, current_user)

    updated = await booking_crud.update_status(booking_id, payload, actor)
    background_tasks.add_task(
        notifications.booking_status_changed, updated, booking.status.value
    )
    return updated


@router.get("/{booking_id}/payment-status", response_model=PaymentSummary)
async def get_payment_status(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> PaymentSummary:
    await _get_party_booking(booking_id, current_user)
    return await booking_crud.payment_summary(booking_id)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/mark-completed", response_model=CompletionResult)
async def mark_completed(
    booking_id: UUID,
    payload: MarkCompletedRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> CompletionResult:
    booking = await _get_party_booking(booking_id, current_user)
    assert_completion_side(current_user, booking, payload.completed_by)

    result = await completion_gate.mark_completed(
        booking_id, payload.completed_by, payload.notes
    )
    if result.promoted:
        completed = await booking_crud.get_booking(booking_id)
        if completed:
            background_tasks.add_task(
                notifications.booking_status_changed, completed, booking.status.value
            )
    return result


@router.get("/{booking_id}/completion-status", response_model=CompletionStatus)
async def get_completion_status(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> CompletionStatus:
    await _get_party_booking(booking_id, current_user)
    return await completion_gate.completion_status(booking_id)


@router.post("/{booking_id}/unmark-completed", response_model=CompletionStatus)
async def unmark_completed(
    booking_id: UUID,
    payload: UnmarkCompletedRequest,
    current_user: CurrentUser = Depends(get_current_user),
) -> CompletionStatus:
    booking = await _get_party_booking(booking_id, current_user)
    assert_completion_side(current_user, booking, payload.unmark_by)
    return await completion_gate.unmark_completed(
        booking_id, payload.unmark_by, payload.reason
    )
