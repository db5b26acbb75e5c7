"""
PayMongo client tests over httpx.MockTransport, no network.
"""

from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from app.errors import GatewayError, ValidationError
from app.gateway import PayMongoClient, verify_webhook_signature
from app.schemas import GatewayEvent, GatewayEventType, SourceType

from .factories import BOOKING_ID, paymongo_event, paymongo_source_event

pytestmark = pytest.mark.anyio

API = "https://api.paymongo.test/v1"


def _client(handler) -> PayMongoClient:
    transport = httpx.MockTransport(handler)
    return PayMongoClient(httpx.AsyncClient(base_url=API, transport=transport))


def _resource(resource_id: str, resource_type: str, **attributes) -> dict:
    return {"data": {"id": resource_id, "type": resource_type, "attributes": attributes}}


class TestCreateSource:
    async def test_posts_wrapped_attributes_and_returns_checkout_url(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json=_resource(
                    "src_1",
                    "source",
                    type="gcash",
                    amount=300_000,
                    currency="PHP",
                    status="pending",
                    redirect={"checkout_url": "https://pm.link/src_1"},
                ),
            )

        source = await _client(handler).create_source(
            SourceType.GCASH,
            300_000,
            redirect={"success": "https://app/ok", "failed": "https://app/fail"},
            metadata={"booking_id": str(BOOKING_ID)},
        )

        assert seen["path"] == "/v1/sources"
        attributes = seen["body"]["data"]["attributes"]
        assert attributes["type"] == "gcash"
        assert attributes["amount"] == 300_000
        assert attributes["currency"] == "PHP"
        assert attributes["metadata"] == {"booking_id": str(BOOKING_ID)}
        assert source.id == "src_1"
        assert source.checkout_url == "https://pm.link/src_1"

    async def test_unknown_source_type_is_rejected_locally(self):
        def handler(request):  # pragma: no cover - must not be called
            raise AssertionError("no request expected")

        with pytest.raises(ValidationError):
            await _client(handler).create_source("bitcoin", 300_000)

    async def test_amount_below_one_peso_is_rejected_locally(self):
        def handler(request):  # pragma: no cover - must not be called
            raise AssertionError("no request expected")

        with pytest.raises(ValidationError):
            await _client(handler).create_source(SourceType.GCASH, 99)


class TestPaymentIntents:
    async def test_create_returns_client_key(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["data"]["attributes"]["payment_method_allowed"] == ["card"]
            return httpx.Response(
                200,
                json=_resource(
                    "pi_1", "payment_intent", amount=500_000, client_key="pi_1_client_abc"
                ),
            )

        intent = await _client(handler).create_payment_intent(500_000)
        assert intent.id == "pi_1"
        assert intent.client_key == "pi_1_client_abc"

    async def test_get_payment_intent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/v1/payment_intents/pi_1"
            return httpx.Response(
                200, json=_resource("pi_1", "payment_intent", status="succeeded")
            )

        intent = await _client(handler).get_payment_intent("pi_1")
        assert intent.status == "succeeded"


class TestCreatePayment:
    async def test_charges_the_source(self):
        def handler(request: httpx.Request) -> httpx.Response:
            attributes = json.loads(request.content)["data"]["attributes"]
            assert attributes["source"] == {"id": "src_1", "type": "source"}
            return httpx.Response(200, json=_resource("pay_1", "payment", status="paid"))

        payment = await _client(handler).create_payment("src_1", 300_000)
        assert payment.id == "pay_1"
        assert payment.status == "paid"


class TestErrors:
    async def test_processor_rejection_maps_to_402(self):
        def handler(request):
            return httpx.Response(
                400,
                json={"errors": [{"code": "parameter_invalid", "detail": "amount is invalid"}]},
            )

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).get_source("src_1")
        assert exc_info.value.status_code == 402
        assert exc_info.value.message == "amount is invalid"
        assert exc_info.value.upstream_status == 400

    async def test_upstream_outage_maps_to_502(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).get_source("src_1")
        assert exc_info.value.status_code == 502

    async def test_network_error_maps_to_502(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).get_source("src_1")
        assert exc_info.value.status_code == 502
        assert exc_info.value.upstream_status is None

    async def test_malformed_response(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": True})

        with pytest.raises(GatewayError):
            await _client(handler).get_source("src_1")

    async def test_unconfigured_client_refuses_to_call(self, monkeypatch):
        from app import settings

        monkeypatch.setattr(settings, "PAYMONGO_SECRET_KEY", "")
        with pytest.raises(GatewayError):
            await PayMongoClient().get_source("src_1")


class TestWebhookSignature:
    SECRET = "whsk_test"
    BODY = b'{"data":{}}'

    def _sign(self, timestamp: str = "1700000000", body: bytes = BODY) -> str:
        return hmac.new(
            self.SECRET.encode(), f"{timestamp}.".encode() + body, hashlib.sha256
        ).hexdigest()

    def test_valid_test_mode_signature(self):
        header = f"t=1700000000,te={self._sign()},li="
        assert verify_webhook_signature(self.BODY, header, self.SECRET)

    def test_valid_live_mode_signature(self):
        header = f"t=1700000000,te=,li={self._sign()}"
        assert verify_webhook_signature(self.BODY, header, self.SECRET)

    def test_tampered_body_fails(self):
        header = f"t=1700000000,te={self._sign()},li="
        assert not verify_webhook_signature(b'{"data":{"x":1}}', header, self.SECRET)

    def test_missing_header_or_timestamp_fails(self):
        assert not verify_webhook_signature(self.BODY, None, self.SECRET)
        assert not verify_webhook_signature(self.BODY, f"te={self._sign()}", self.SECRET)


class TestGatewayEventParsing:
    def test_card_payment_uses_payment_intent_as_reference(self):
        event = GatewayEvent.from_payload(paymongo_event(intent_id="pi_9", payment_id="pay_9"))
        assert event.type == GatewayEventType.PAYMENT_PAID
        assert event.reference == "pi_9"
        assert event.resource_id == "pay_9"
        assert event.booking_id == BOOKING_ID
        assert event.payment_method == "card"

    def test_payment_without_intent_falls_back_to_source(self):
        event = GatewayEvent.from_payload(paymongo_event(intent_id=None))
        assert event.reference == "card_abc"

    def test_source_event_uses_source_id(self):
        event = GatewayEvent.from_payload(paymongo_source_event(source_id="src_42"))
        assert event.type == GatewayEventType.SOURCE_CHARGEABLE
        assert event.reference == "src_42"
        assert event.payment_method == "gcash"

    def test_metadata_payment_type_is_parsed(self):
        event = GatewayEvent.from_payload(paymongo_event(payment_type="balance"))
        assert event.payment_type == "balance"

    def test_garbage_booking_id_is_none(self):
        event = GatewayEvent.from_payload(paymongo_event(booking_id="not-a-uuid"))
        assert event.booking_id is None
