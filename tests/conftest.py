"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files: pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from tortoise import Tortoise, connections

from app.deps import (
    can_pay,
    can_read_or_manage_booking,
    can_read_receipts,
    can_write_booking,
    get_current_user,
    get_notifications_client,
)
from app.errors import register_exception_handlers
from app.gateway import get_gateway_client
from app.routers.booking import router as booking_router
from app.routers.payments import router as payments_router
from app.routers.receipts import router as receipts_router

from .factories import make_admin, make_couple, make_vendor

# ---------------------------------------------------------------------------
# Default no-op client mocks: prevent real HTTP calls in tests
# ---------------------------------------------------------------------------


def _noop_notifications_client():
    mock = MagicMock()
    mock.booking_status_changed = AsyncMock(return_value=True)
    mock.payment_received = AsyncMock(return_value=True)
    return mock


def _noop_gateway_client():
    mock = MagicMock()
    mock.is_configured = False
    return mock


def _bare_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(booking_router)
    app.include_router(payments_router)
    app.include_router(receipts_router)
    return app


# ---------------------------------------------------------------------------
# App builder, used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, notifications_client=None, gateway_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `notifications_client` / `gateway_client` to inject custom mocks.
    Defaults to no-op mocks, avoiding real HTTP calls.
    """
    app = _bare_app()

    async def _user():
        return current_user

    for dep in (
        can_read_or_manage_booking,
        can_write_booking,
        can_pay,
        can_read_receipts,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    nc = notifications_client if notifications_client is not None else _noop_notifications_client()
    gc = gateway_client if gateway_client is not None else _noop_gateway_client()
    app.dependency_overrides[get_notifications_client] = lambda: nc
    app.dependency_overrides[get_gateway_client] = lambda: gc

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def couple_client():
    return TestClient(build_app(make_couple()), raise_server_exceptions=True)


@pytest.fixture()
def vendor_client():
    return TestClient(build_app(make_vendor()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    return _bare_app()


@pytest.fixture()
def client_factory():
    def _make(current_user, notifications_client=None, gateway_client=None) -> TestClient:
        return TestClient(
            build_app(
                current_user,
                notifications_client=notifications_client,
                gateway_client=gateway_client,
            ),
            raise_server_exceptions=True,
        )

    return _make


# ---------------------------------------------------------------------------
# Database: service tests run against in-memory SQLite
# ---------------------------------------------------------------------------


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def db(anyio_backend):
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": ["app.models"]})
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()
