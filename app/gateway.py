"""
PayMongo gateway client.

Thin async wrapper around the PayMongo REST API. Amounts are minor currency
units (centavos) in and out. Upstream failures surface as GatewayError with
the upstream status; nothing is retried here.
"""

from __future__ import annotations

import hashlib
import hmac
from functools import lru_cache
from typing import Any

import httpx
from loguru import logger

from app import settings
from app.errors import GatewayError, ValidationError
from app.schemas import GatewayResource, SourceType

MIN_AMOUNT = 100  # ₱1.00


@lru_cache(maxsize=1)
def _get_paymongo_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.PAYMONGO_API_URL,
        timeout=httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS),
        auth=httpx.BasicAuth(settings.PAYMONGO_SECRET_KEY, ""),
        headers={"Accept": "application/json"},
    )


class PayMongoClient:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._override = client

    @property
    def _client(self) -> httpx.AsyncClient:
        return self._override or _get_paymongo_http_client()

    @property
    def is_configured(self) -> bool:
        return self._override is not None or bool(settings.PAYMONGO_SECRET_KEY)

    async def _request(
        self, method: str, path: str, attributes: dict[str, Any] | None = None
    ) -> GatewayResource:
        if not self.is_configured:
            raise GatewayError("PayMongo secret key not configured")

        body = {"data": {"attributes": attributes}} if attributes is not None else None
        try:
            resp = await self._client.request(method, path, json=body)
        except httpx.RequestError as exc:
            logger.warning("PayMongo {} {} unreachable: {}", method, path, exc)
            raise GatewayError(f"PayMongo unreachable: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code >= 400:
            errors = payload.get("errors") or [{}]
            message = errors[0].get("detail") or f"PayMongo returned {resp.status_code}"
            logger.warning("PayMongo {} {} -> {}: {}", method, path, resp.status_code, message)
            raise GatewayError(
                message, upstream_status=resp.status_code, code=errors[0].get("code")
            )

        try:
            return GatewayResource.from_payload(payload["data"])
        except (KeyError, TypeError) as exc:
            raise GatewayError(
                "Malformed PayMongo response", upstream_status=resp.status_code
            ) from exc

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount < MIN_AMOUNT:
            raise ValidationError(
                "Minimum payment amount is ₱1.00", amount=amount, minimum=MIN_AMOUNT
            )

    async def create_source(
        self,
        source_type: SourceType | str,
        amount: int,
        currency: str = "PHP",
        redirect: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResource:
        """Create an e-wallet source (GCash, Maya, GrabPay); returns its checkout URL."""
        try:
            source_type = SourceType(source_type)
        except ValueError:
            raise ValidationError(
                f"Invalid payment type. Must be one of: {[t.value for t in SourceType]}"
            ) from None
        self._check_amount(amount)

        source = await self._request(
            "POST",
            "/sources",
            {
                "type": source_type.value,
                "amount": amount,
                "currency": currency.upper(),
                "redirect": redirect or {},
                "metadata": metadata or {},
            },
        )
        logger.info("PayMongo source {} created for {} {}", source.id, amount, currency)
        return source

    async def get_source(self, source_id: str) -> GatewayResource:
        return await self._request("GET", f"/sources/{source_id}")

    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "PHP",
        description: str | None = None,
        payment_method_allowed: list[str] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResource:
        """Create a card payment intent; the client key goes back to the browser."""
        self._check_amount(amount)
        intent = await self._request(
            "POST",
            "/payment_intents",
            {
                "amount": amount,
                "currency": currency.upper(),
                "description": description or "Wedding booking payment",
                "payment_method_allowed": payment_method_allowed or ["card"],
                "metadata": metadata or {},
            },
        )
        logger.info("PayMongo payment intent {} created for {} {}", intent.id, amount, currency)
        return intent

    async def get_payment_intent(self, intent_id: str) -> GatewayResource:
        return await self._request("GET", f"/payment_intents/{intent_id}")

    async def create_payment(
        self,
        source_id: str,
        amount: int,
        currency: str = "PHP",
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResource:
        """Charge a chargeable e-wallet source."""
        self._check_amount(amount)
        return await self._request(
            "POST",
            "/payments",
            {
                "amount": amount,
                "currency": currency.upper(),
                "description": description or "Wedding booking payment",
                "source": {"id": source_id, "type": "source"},
                "metadata": metadata or {},
            },
        )


def verify_webhook_signature(payload: bytes, header: str | None, secret: str) -> bool:
    """
    Check a `Paymongo-Signature` header: `t=<ts>,te=<test sig>,li=<live sig>`.
    The signature is HMAC-SHA256 of "<ts>.<raw body>" keyed with the webhook secret.
    """
    if not header:
        return False
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t")
    if not timestamp:
        return False

    expected = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    candidates = [parts.get("li"), parts.get("te")]
    return any(sig and hmac.compare_digest(sig, expected) for sig in candidates)


_paymongo_client = PayMongoClient()


def get_gateway_client() -> PayMongoClient:
    return _paymongo_client
