import uuid
from decimal import Decimal

import pytest

from app.settlement import model as m
from app.settlement.errors import AmountMismatch, BusinessRuleError, GatewayError, NotFoundError, ValidationError
from tests.fakes import seed_order


def test_split_initiate_creates_pending_transaction(engine, store, split_gw, seller_id):
    order = seed_order(store, [(seller_id, 900, 1)], delivery_fee_cents=100)

    result = engine.initiate(order.id, gateway="split", delivery_fee_cents=100, buyer_email="buyer@example.com")

    assert result.outcome == "initiated"
    assert result.redirect_url == f"https://checkout.mock/{result.reference}"
    tx = store.transactions[result.transaction_id]
    assert tx.status == m.TX_PENDING
    assert tx.total_amount_cents == 1000
    assert tx.gateway_fee_cents == 15  # 1.5% estimate
    assert [(i.platform_commission_cents, i.seller_share_cents) for i in tx.items] == [(45, 855)]
    assert store.orders[order.id].transaction_id == tx.id

    op, sent = split_gw.calls[0]
    assert op == "initialize"
    assert sent["split"] == [(f"ACCT_{seller_id.hex[:8]}", Decimal("95.00"))]


def test_push_initiate_normalises_phone_and_marks_gateway_initiated(engine, store, push_gw, seller_id):
    order = seed_order(store, [(seller_id, 2500, 2)])

    result = engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="0712 345-678")

    assert result.outcome == "push_sent"
    assert push_gw.calls[0][1]["phone"] == "254712345678"
    assert push_gw.calls[0][1]["account_reference"] == f"ORDER-{order.id}"
    tx = store.transactions[result.transaction_id]
    assert tx.status == m.TX_GATEWAY_INITIATED
    assert tx.gateway_reference == result.reference
    assert tx.payment_method == "M-Pesa"


def test_push_initiate_rejects_bad_phone(engine, store, seller_id):
    order = seed_order(store, [(seller_id, 100, 1)])
    with pytest.raises(ValidationError) as exc:
        engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="12345")
    assert exc.value.code == "INVALID_PHONE"
    assert store.transactions == {}


def test_push_rejection_leaves_no_transaction(engine, store, push_gw, seller_id):
    push_gw.succeed = False
    order = seed_order(store, [(seller_id, 100, 1)])

    with pytest.raises(GatewayError):
        engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")

    assert store.transactions == {}
    assert store.orders[order.id].transaction_id is None


def test_split_requires_email(engine, store, seller_id):
    order = seed_order(store, [(seller_id, 100, 1)])
    with pytest.raises(ValidationError) as exc:
        engine.initiate(order.id, gateway="split", delivery_fee_cents=0)
    assert exc.value.code == "MISSING_EMAIL"


def test_second_initiate_while_outstanding_is_rejected(engine, store, seller_id):
    order = seed_order(store, [(seller_id, 100, 1)])
    engine.initiate(order.id, gateway="split", delivery_fee_cents=0, buyer_email="b@example.com")

    with pytest.raises(BusinessRuleError) as exc:
        engine.initiate(order.id, gateway="split", delivery_fee_cents=0, buyer_email="b@example.com")
    assert exc.value.code == "TRANSACTION_OUTSTANDING"
    assert len(store.transactions) == 1


def test_amount_mismatch_creates_nothing(engine, store, split_gw, seller_id):
    order = seed_order(store, [(seller_id, 900, 1)], total_amount_cents=1200)
    with pytest.raises(AmountMismatch):
        engine.initiate(order.id, gateway="split", delivery_fee_cents=100, buyer_email="b@example.com")
    assert store.transactions == {}
    assert split_gw.calls == []


def test_unknown_order(engine):
    with pytest.raises(NotFoundError) as exc:
        engine.initiate(uuid.uuid4(), gateway="split", delivery_fee_cents=0, buyer_email="b@example.com")
    assert exc.value.code == "ORDER_NOT_FOUND"


def test_initiate_retries_on_write_conflict(engine, store, split_gw, seller_id):
    order = seed_order(store, [(seller_id, 100, 1)])
    store.fail_next_commits(1)

    result = engine.initiate(order.id, gateway="split", delivery_fee_cents=0, buyer_email="b@example.com")

    assert result.outcome == "initiated"
    assert list(store.transactions) == [result.transaction_id]
    assert [op for op, _ in split_gw.calls] == ["initialize", "initialize"]
