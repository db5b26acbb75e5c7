import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from loguru import logger

from app import settings
from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    NotificationsClient,
    can_pay,
    get_notifications_client,
    resolve_actor,
)
from app.errors import ForbiddenError, NotFoundError
from app.gateway import PayMongoClient, get_gateway_client, verify_webhook_signature
from app.reconciliation import Outcome, reconciliation_handler
from app.schemas import (
    GatewayEvent,
    GatewayResource,
    PaymentIntentCreate,
    PaymentProcessRequest,
    PaymentProcessResponse,
    ReceiptResponse,
    SourceCreate,
)
from app.transitions import Actor

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/process", response_model=PaymentProcessResponse)
async def process_payment(
    payload: PaymentProcessRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(can_pay),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> PaymentProcessResponse:
    """
    Synchronous confirmation from the client after the gateway accepted the
    charge. A reference already recorded (e.g. by the webhook) is a success.
    """
    booking = await booking_crud.get_booking(payload.booking_id)
    if not booking:
        raise NotFoundError("Booking not found", booking_id=payload.booking_id)
    if resolve_actor(current_user, booking) not in (Actor.COUPLE, Actor.ADMIN):
        raise ForbiddenError("Only the couple can pay for this booking")

    result = await reconciliation_handler.process_payment(payload)
    receipt = ReceiptResponse.from_model(result.receipt) if result.receipt else None
    if result.outcome == Outcome.RECORDED and receipt is not None:
        background_tasks.add_task(notifications.payment_received, receipt)

    return PaymentProcessResponse(
        outcome=result.outcome,
        booking=await booking_crud.get_booking(payload.booking_id),
        receipt=receipt,
    )


@router.post("/webhook")
async def paymongo_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> dict:
    """
    PayMongo delivery endpoint. Always acknowledges with 200 so the gateway
    stops redelivering; problems are logged and reported as processed=False.
    """
    body = await request.body()

    if settings.PAYMONGO_WEBHOOK_SECRET and not verify_webhook_signature(
        body, request.headers.get("Paymongo-Signature"), settings.PAYMONGO_WEBHOOK_SECRET
    ):
        logger.warning("Webhook rejected: invalid Paymongo-Signature")
        return {"received": True, "processed": False}

    try:
        event = GatewayEvent.from_payload(json.loads(body))
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("Webhook payload could not be parsed: {}", exc)
        return {"received": True, "processed": False}

    logger.info("Webhook {} received: {}", event.event_id, event.raw_type)
    try:
        result = await reconciliation_handler.handle_event(event)
    except Exception:
        logger.exception("Webhook {} ({}) failed", event.event_id, event.raw_type)
        return {"received": True, "processed": False}

    if result.outcome == Outcome.RECORDED and result.receipt is not None:
        background_tasks.add_task(
            notifications.payment_received, ReceiptResponse.from_model(result.receipt)
        )
    return {"received": True, "processed": True, "outcome": result.outcome.value}


# ---------------------------------------------------------------------------
# Gateway pass-through: checkout creation and status polling
# ---------------------------------------------------------------------------


@router.post("/create-source", response_model=GatewayResource)
async def create_source(
    payload: SourceCreate,
    _: CurrentUser = Depends(can_pay),
    gateway: PayMongoClient = Depends(get_gateway_client),
) -> GatewayResource:
    return await gateway.create_source(
        payload.type,
        payload.amount,
        currency=payload.currency,
        redirect=payload.redirect,
        metadata=payload.metadata,
    )


@router.get("/source/{source_id}", response_model=GatewayResource)
async def get_source(
    source_id: str,
    _: CurrentUser = Depends(can_pay),
    gateway: PayMongoClient = Depends(get_gateway_client),
) -> GatewayResource:
    return await gateway.get_source(source_id)


@router.post("/create-payment-intent", response_model=GatewayResource)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    _: CurrentUser = Depends(can_pay),
    gateway: PayMongoClient = Depends(get_gateway_client),
) -> GatewayResource:
    return await gateway.create_payment_intent(
        payload.amount,
        currency=payload.currency,
        description=payload.description,
        payment_method_allowed=payload.payment_method_allowed,
        metadata=payload.metadata,
    )


@router.get("/payment-intent/{intent_id}", response_model=GatewayResource)
async def get_payment_intent(
    intent_id: str,
    _: CurrentUser = Depends(can_pay),
    gateway: PayMongoClient = Depends(get_gateway_client),
) -> GatewayResource:
    return await gateway.get_payment_intent(intent_id)


@router.get("/health")
async def payments_health(
    gateway: PayMongoClient = Depends(get_gateway_client),
) -> dict:
    return {
        "status": "ok",
        "gateway": "paymongo",
        "secret_key_configured": gateway.is_configured,
        "public_key_configured": bool(settings.PAYMONGO_PUBLIC_KEY),
        "webhook_secret_configured": bool(settings.PAYMONGO_WEBHOOK_SECRET),
    }
