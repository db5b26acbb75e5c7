"""
FastAPI application for the wedding bookings service.

Routers:
- /bookings  lifecycle, payment status, two-sided completion
- /payments  synchronous confirmation, PayMongo webhook, checkout helpers
- /receipts  ledger reads
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import uuid4

from fastapi import FastAPI, Request
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from app import settings
from app.errors import register_exception_handlers
from app.routers.booking import router as booking_router
from app.routers.payments import router as payments_router
from app.routers.receipts import router as receipts_router

CORRELATION_HEADER = "X-Correlation-ID"

TORTOISE_MODULES = {"models": ["app.models"]}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Bookings service starting up")
    async with RegisterTortoise(
        app,
        db_url=settings.db_url,
        modules=TORTOISE_MODULES,
        generate_schemas=True,
    ):
        yield
    logger.info("Bookings service shutting down")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Wedding Bookings API",
        description="Booking lifecycle and payment reconciliation",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = request.headers.get(CORRELATION_HEADER) or uuid4().hex
        with logger.contextualize(correlation_id=cid):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response

    register_exception_handlers(app)

    app.include_router(booking_router)
    app.include_router(payments_router)
    app.include_router(receipts_router)

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "service": "bookings",
        }

    return app


app = create_app()
