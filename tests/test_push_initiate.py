import json

import httpx
import pytest

from app.notifications.dispatcher import NotificationDispatcher
from app.providers.http import HttpClient
from app.providers.push_gateway import HttpPushGateway
from app.settlement import model as m
from app.settlement.engine import SettlementEngine
from app.settlement.errors import GatewayError, ValidationError
from app.settlement.events import push_callback_to_event
from tests.fakes import seed_order


def _ack_only_push_gateway(pushes: list) -> HttpPushGateway:
    def handler(request):
        pushes.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    http = HttpClient(5.0, transport=httpx.MockTransport(handler), sleep=lambda s: None)
    return HttpPushGateway(base_url="https://push.test", api_key="key", channel_id="7", callback_url="https://cb", http=http)


@pytest.fixture
def pushes() -> list:
    return []


@pytest.fixture
def ack_engine(store, config, split_gw, notifier, pushes) -> SettlementEngine:
    return SettlementEngine(
        store=store,
        connect=store.connect,
        config=config,
        gateways={"split": split_gw, "push": _ack_only_push_gateway(pushes)},
        dispatcher=NotificationDispatcher(notifier),
        sleep=lambda s: None,
    )


def _callback(order_id, status, **extra):
    payload = {"external_reference": f"ORDER-{order_id}", "status": status}
    payload.update(extra)
    return push_callback_to_event(payload)


def test_ack_only_push_keeps_a_per_transaction_reference(ack_engine, store, pushes, seller_id):
    order = seed_order(store, [(seller_id, 1_000, 1)])

    result = ack_engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    assert result.outcome == "push_sent"
    assert result.reference.startswith("PENDING-")
    assert result.reference != f"ORDER-{order.id}"
    assert pushes[0]["account_reference"] == f"ORDER-{order.id}"
    assert store.transactions[result.transaction_id].status == m.TX_GATEWAY_INITIATED


def test_paying_again_after_a_failed_push_settles_the_new_transaction(ack_engine, store, pushes, seller_id):
    order = seed_order(store, [(seller_id, 1_000, 1)])

    first = ack_engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")
    failed = ack_engine.handle_event(
        _callback(order.id, "failed", result={"ResultCode": 1032, "ResultDesc": "Request cancelled by user"})
    )
    assert failed.outcome == "failure"

    second = ack_engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")
    assert second.transaction_id != first.transaction_id
    assert second.reference != first.reference

    paid = ack_engine.handle_event(
        _callback(order.id, "completed", transaction_id="QK7ABC", result={"ResultCode": 0, "ResultDesc": "ok"})
    )

    assert paid.outcome == "success"
    assert paid.transaction_id == second.transaction_id
    assert store.transactions[first.transaction_id].status == m.TX_FAILED
    assert store.transactions[second.transaction_id].status == m.TX_COMPLETED
    assert store.orders[order.id].status == m.ORDER_PAID
    assert store.balance(seller_id) == 950
    assert store.total_balance() == 0
    assert [p["amount"] for p in pushes] == [10, 10]


def test_push_rejects_totals_with_fractional_units(ack_engine, store, pushes, seller_id):
    order = seed_order(store, [(seller_id, 12_345, 1)])

    with pytest.raises(ValidationError) as exc:
        ack_engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    assert exc.value.code == "INVALID_AMOUNT"
    assert pushes == []
    assert store.transactions == {}
    assert store.orders[order.id].transaction_id is None


def test_commit_conflict_does_not_prompt_the_phone_twice(engine, store, push_gw, seller_id):
    order = seed_order(store, [(seller_id, 2_000, 1)])
    store.fail_next_commits(1)

    result = engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    assert result.outcome == "push_sent"
    assert [op for op, _ in push_gw.calls] == ["push"]
    assert list(store.transactions) == [result.transaction_id]
    assert store.transactions[result.transaction_id].status == m.TX_GATEWAY_INITIATED
    assert store.orders[order.id].transaction_id == result.transaction_id


def test_rejected_push_releases_the_reservation(engine, store, push_gw, seller_id):
    push_gw.succeed = False
    order = seed_order(store, [(seller_id, 2_000, 1)])

    with pytest.raises(GatewayError):
        engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    assert [op for op, _ in push_gw.calls] == ["push"]
    assert store.transactions == {}
    assert store.orders[order.id].transaction_id is None
    # committed reserve, then committed release
    assert store.commits == 2
