import json
from decimal import Decimal

import httpx
import pytest

from app.providers import push_gateway, split_gateway
from app.providers.factory import build_gateways
from app.providers.http import HttpClient
from app.providers.mock import MockPushGateway, MockSplitGateway
from app.providers.push_gateway import HttpPushGateway
from app.providers.split_gateway import HttpSplitGateway
from app.settlement.errors import GatewayError, ValidationError
from settings import Settings


def _client(handler, **kwargs) -> HttpClient:
    return HttpClient(5.0, transport=httpx.MockTransport(handler), sleep=lambda s: None, **kwargs)


def test_http_client_retries_transient_statuses():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"message": "busy"})
        return httpx.Response(200, json={"status": True, "data": {}})

    resp = _client(handler, attempts=3).get("https://gw.test/ping", headers={})

    assert resp.status_code == 200
    assert len(calls) == 3


def test_http_client_gives_up_with_retryable_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError) as exc:
        _client(handler, attempts=2).post("https://gw.test/x", headers={}, json_body={})
    assert exc.value.code == "GATEWAY_UNAVAILABLE"
    assert exc.value.retryable is True


def test_split_initialize_sends_percentage_split():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"status": True, "data": {"reference": "ORD-1", "authorization_url": "https://pay.test/abc"}},
        )

    gw = HttpSplitGateway(base_url="https://gw.test/", secret_key="sk_live", http=_client(handler))
    res = gw.initialize(
        reference="ORD-1",
        amount_cents=1000,
        email="b@example.com",
        split=[("ACCT_A", Decimal("95.00"))],
        metadata={"order_id": "o"},
    )

    assert res.authorization_url == "https://pay.test/abc"
    assert seen["auth"] == "Bearer sk_live"
    assert seen["body"]["amount"] == 1000
    assert seen["body"]["split"]["subaccounts"] == [{"subaccount": "ACCT_A", "share": 95.0}]


def test_split_verify_maps_status():
    def handler(request):
        assert request.url.path == "/transaction/verify/ORD-1"
        return httpx.Response(
            200,
            json={"status": True, "data": {"status": "abandoned", "reference": "ORD-1", "amount": 1000, "fees": 15}},
        )

    res = HttpSplitGateway(base_url="https://gw.test", secret_key="k", http=_client(handler)).verify("ORD-1")

    assert res.status == "failed"
    assert (res.amount_cents, res.fee_cents) == (1000, 15)


def test_split_rejection_raises_gateway_error():
    def handler(request):
        return httpx.Response(400, json={"status": False, "message": "Invalid key"})

    gw = HttpSplitGateway(base_url="https://gw.test", secret_key="k", http=_client(handler))
    with pytest.raises(GatewayError) as exc:
        gw.refund(reference="ORD-1", amount_cents=100, metadata={})
    assert exc.value.code == "GATEWAY_REJECTED"
    assert exc.value.retryable is False


def test_split_transfer_needs_recipient():
    gw = HttpSplitGateway(base_url="https://gw.test", secret_key="k", http=_client(lambda r: httpx.Response(200)))
    with pytest.raises(GatewayError) as exc:
        gw.transfer(reference="PAYOUT-1", amount_cents=100, recipient=None, reason="x")
    assert exc.value.code == "MISSING_RECIPIENT"


def test_push_sends_whole_units():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "reference": "SW-123"})

    gw = HttpPushGateway(base_url="https://push.test", api_key="key", channel_id="7", callback_url="https://cb", http=_client(handler))
    res = gw.push(amount_cents=150_000, phone="254712345678", account_reference="ORDER-1", description="d")

    assert res.reference == "SW-123"
    assert seen["body"]["amount"] == 1500
    assert seen["body"]["channel_id"] == "7"


def test_push_unsuccessful_ack_raises():
    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "Invalid phone"})

    gw = HttpPushGateway(base_url="https://push.test", api_key="key", channel_id="7", callback_url="", http=_client(handler))
    with pytest.raises(GatewayError) as exc:
        gw.push(amount_cents=100, phone="254712345678", account_reference="ORDER-1", description="d")
    assert exc.value.message == "Invalid phone"


def test_push_ack_echoing_the_order_reference_returns_no_reference():
    def handler(request):
        return httpx.Response(200, json={"success": True, "external_reference": "ORDER-1"})

    gw = HttpPushGateway(base_url="https://push.test", api_key="key", channel_id="7", callback_url="", http=_client(handler))
    res = gw.push(amount_cents=1_000, phone="254712345678", account_reference="ORDER-1", description="d")

    assert res.ok
    assert res.reference is None


def test_push_refuses_fractional_units_before_calling_out():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True})

    gw = HttpPushGateway(base_url="https://push.test", api_key="key", channel_id="7", callback_url="", http=_client(handler))
    for cents in (12_345, 12_250, 0):
        with pytest.raises(ValidationError) as exc:
            gw.push(amount_cents=cents, phone="254712345678", account_reference="ORDER-1", description="d")
        assert exc.value.code == "INVALID_AMOUNT"
    assert calls == []


def test_signature_verification():
    raw = b'{"a":1}'
    assert split_gateway.verify_signature(raw=raw, signature_header=split_gateway.sign_payload("s", raw), secret="s") == (True, None)
    assert split_gateway.verify_signature(raw=raw, signature_header="00", secret="s") == (False, "INVALID_SIGNATURE")
    assert push_gateway.verify_signature(raw=raw, signature_header="sha256=" + push_gateway.sign_payload("s", raw), secret="s") == (True, None)
    assert push_gateway.verify_signature(raw=raw, signature_header=None, secret="s") == (False, "MISSING_SIGNATURE")
    assert push_gateway.verify_signature(raw=raw, signature_header="x", secret="") == (False, "WEBHOOK_SECRET_NOT_CONFIGURED")


def test_factory_defaults_to_mocks():
    gateways = build_gateways(Settings(GATEWAY_MODE="mock"))
    assert isinstance(gateways["split"], MockSplitGateway)
    assert isinstance(gateways["push"], MockPushGateway)

    real = build_gateways(Settings(GATEWAY_MODE="real", SPLIT_GATEWAY_SECRET_KEY="sk", PUSH_GATEWAY_API_KEY="pk"))
    assert isinstance(real["split"], HttpSplitGateway)
    assert isinstance(real["push"], HttpPushGateway)
