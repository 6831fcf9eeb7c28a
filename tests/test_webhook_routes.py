from __future__ import annotations

import pytest

from scripts._webhook_signing import canonical_json_bytes, push_signature_header, split_signature_header
from services.metrics import get_counter
from tests.fakes import seed_order

SPLIT_SECRET = "sk_test_split"
PUSH_SECRET = "dev_push_secret"


@pytest.fixture(autouse=True)
def _secrets(monkeypatch):
    monkeypatch.setenv("SPLIT_GATEWAY_SECRET_KEY", SPLIT_SECRET)
    monkeypatch.setenv("PUSH_WEBHOOK_SECRET", PUSH_SECRET)


def _post_split(client, payload, secret=SPLIT_SECRET):
    body = canonical_json_bytes(payload)
    headers = {"Content-Type": "application/json", **split_signature_header(secret, body)}
    return client.post("/v1/webhooks/split", content=body, headers=headers)


def _post_push(client, payload, secret=PUSH_SECRET):
    body = canonical_json_bytes(payload)
    headers = {"Content-Type": "application/json", **push_signature_header(secret, body)}
    return client.post("/v1/webhooks/push", content=body, headers=headers)


def _pending_split(engine, store, seller_id):
    order = seed_order(store, [(seller_id, 900, 1)], delivery_fee_cents=100)
    return engine.initiate(order.id, gateway="split", delivery_fee_cents=100, buyer_email="b@example.com")


def test_split_charge_success(client, engine, store, notifier, seller_id):
    init = _pending_split(engine, store, seller_id)

    r = _post_split(client, {"event": "charge.success", "data": {"reference": init.reference, "fees": 15, "amount": 1000}})

    assert r.status_code == 200, r.text
    assert r.json() == {"ok": True, "gateway": "split", "outcome": "success", "reference": init.reference}
    assert store.balance(seller_id) == 855
    assert len(notifier.sent) == 3

    audit = store.webhook_events[-1]
    assert audit["signature_valid"] is True
    assert audit["outcome"] == "success"
    assert audit["headers"]["x-gateway-signature"] == "***"
    assert get_counter("webhook_events_total", {"gateway": "split", "signature_valid": "true", "outcome": "success"}) == 1


def test_redelivered_webhook_is_acked_as_duplicate(client, engine, store, seller_id):
    init = _pending_split(engine, store, seller_id)
    payload = {"event": "charge.success", "data": {"reference": init.reference, "fees": 15}}

    assert _post_split(client, payload).json()["outcome"] == "success"
    r = _post_split(client, payload)

    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "duplicate"
    assert store.balance(seller_id) == 855


def test_bad_signature_is_rejected(client, engine, store, seller_id):
    init = _pending_split(engine, store, seller_id)

    r = _post_split(client, {"event": "charge.success", "data": {"reference": init.reference}}, secret="wrong")

    assert r.status_code == 401, r.text
    assert r.json()["detail"]["error"] == "INVALID_SIGNATURE"
    assert store.transactions[init.transaction_id].status == "pending"
    assert store.webhook_events[-1]["signature_valid"] is False


def test_missing_signature(client):
    r = client.post("/v1/webhooks/push", content=b"{}", headers={"Content-Type": "application/json"})
    assert r.status_code == 401, r.text
    assert r.json()["detail"]["error"] == "MISSING_SIGNATURE"


def test_unconfigured_secret_fails_closed(client, monkeypatch):
    monkeypatch.delenv("PUSH_WEBHOOK_SECRET")
    r = _post_push(client, {"status": "completed"}, secret="anything")
    assert r.status_code == 500, r.text
    assert r.json()["detail"]["error"] == "WEBHOOK_SECRET_NOT_CONFIGURED"


def test_unknown_event_kind_is_rejected(client):
    r = _post_split(client, {"event": "subscription.create", "data": {"reference": "x"}})
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "UNKNOWN_EVENT"


def test_invalid_json(client):
    body = b"not json"
    r = client.post(
        "/v1/webhooks/split",
        content=body,
        headers={"Content-Type": "application/json", **split_signature_header(SPLIT_SECRET, body)},
    )
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "INVALID_JSON"


def test_unknown_reference_is_acked(client):
    r = _post_split(client, {"event": "charge.failed", "data": {"reference": "ORD-unknown"}})
    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "not_found"


def test_push_failure_callback(client, engine, store, seller_id):
    order = seed_order(store, [(seller_id, 1_000, 1)])
    init = engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    r = _post_push(
        client,
        {
            "transaction_id": None,
            "external_reference": f"ORDER-{order.id}",
            "status": "failed",
            "result": {"ResultCode": 1032, "ResultDesc": "Request cancelled by user"},
        },
    )

    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "failure"
    assert store.transactions[init.transaction_id].status == "failed"
    assert store.orders[order.id].transaction_id is None


def test_exhausted_retries_are_not_acked(client, engine, store, seller_id):
    init = _pending_split(engine, store, seller_id)
    store.fail_next_commits(engine.config.max_attempts)

    r = _post_split(client, {"event": "charge.success", "data": {"reference": init.reference}})

    assert r.status_code == 503, r.text
    assert r.json()["detail"]["error"] == "RETRY_EXHAUSTED"
    assert store.transactions[init.transaction_id].status == "pending"
