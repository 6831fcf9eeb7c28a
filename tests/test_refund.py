import pytest

from app.settlement import model as m
from app.settlement.errors import BusinessRuleError, GatewayError
from app.settlement.events import RefundProcessedEvent, SuccessEvent
from tests.fakes import CLEARING_ID, PLATFORM_ID, seed_order


def _item_id(order):
    return order.items[0].id


def test_split_refund_debits_seller_and_platform(settled, engine, store, split_gw, seller_id):
    order, confirm = settled

    result = engine.refund_item(confirm.transaction_id, _item_id(order))

    assert result.outcome == "refund_pending"
    assert result.amount_cents == 900
    item = store.transactions[confirm.transaction_id].items[0]
    assert (item.refund_status, item.refunded_amount_cents) == (m.REFUND_PENDING, 900)
    assert store.balance(seller_id) == 0
    assert store.balance(PLATFORM_ID) == 130 - 45
    assert store.balance(CLEARING_ID) == -985 + 900
    assert store.total_balance() == 0

    refund_calls = [kw for op, kw in split_gw.calls if op == "refund"]
    assert refund_calls == [
        {
            "reference": confirm.reference,
            "amount_cents": 900,
            "metadata": {"item_id": str(_item_id(order)), "transaction_id": str(confirm.transaction_id)},
        }
    ]


def test_refund_twice_is_a_noop(settled, engine, store, split_gw, seller_id):
    order, confirm = settled
    engine.refund_item(confirm.transaction_id, _item_id(order))
    entries = len(store.entries)

    again = engine.refund_item(confirm.transaction_id, _item_id(order))

    assert again.outcome == "noop"
    assert again.status == m.REFUND_PENDING
    assert len(store.entries) == entries
    assert store.balance(seller_id) == 0
    assert [op for op, _ in split_gw.calls].count("refund") == 1


def test_refund_processed_webhook_completes_refund(settled, engine, store):
    order, confirm = settled
    engine.refund_item(confirm.transaction_id, _item_id(order))
    event = RefundProcessedEvent(reference=confirm.reference, item_id=_item_id(order), amount_cents=900)

    done = engine.handle_event(event)
    dup = engine.handle_event(event)

    assert done.outcome == "refund_completed"
    assert dup.outcome == "duplicate"
    assert store.transactions[confirm.transaction_id].items[0].refund_status == m.REFUND_COMPLETED


def test_refund_processed_without_local_request_posts_entries(settled, engine, store, seller_id):
    order, confirm = settled

    result = engine.handle_event(RefundProcessedEvent(reference=confirm.reference, item_id=_item_id(order)))

    assert result.outcome == "refund_completed"
    assert result.event_id is not None
    assert store.balance(seller_id) == 0
    assert store.total_balance() == 0


def test_gateway_already_reversed_turns_refund_into_reversal(settled, engine, store, split_gw, seller_id):
    order, confirm = settled
    split_gw.verify_status = "reversed"

    result = engine.refund_item(confirm.transaction_id, _item_id(order))

    assert result.outcome == "reversal"
    tx = store.transactions[confirm.transaction_id]
    assert tx.is_reversed is True
    assert tx.items[0].refund_status == m.REFUND_COMPLETED
    assert store.orders[order.id].status == m.ORDER_CANCELLED
    assert store.balance(seller_id) == 0
    assert store.total_balance() == 0
    assert "refund" not in [op for op, _ in split_gw.calls]


def test_gateway_refund_failure_changes_nothing(settled, engine, store, split_gw, seller_id):
    order, confirm = settled
    split_gw.succeed = False

    with pytest.raises(GatewayError):
        engine.refund_item(confirm.transaction_id, _item_id(order))

    assert store.transactions[confirm.transaction_id].items[0].refund_status == m.REFUND_NONE
    assert store.balance(seller_id) == 855


def test_refund_requires_completed_transaction(engine, store, seller_id):
    order = seed_order(store, [(seller_id, 300, 1)])
    init = engine.initiate(order.id, gateway="split", delivery_fee_cents=0, buyer_email="b@example.com")

    with pytest.raises(BusinessRuleError) as exc:
        engine.refund_item(init.transaction_id, order.items[0].id)
    assert exc.value.code == "TRANSACTION_NOT_REFUNDABLE"


def test_push_refund_is_manual_until_completed(engine, store, push_gw, seller_id):
    order = seed_order(store, [(seller_id, 2_000, 1)])
    init = engine.initiate(order.id, gateway="push", delivery_fee_cents=0, phone="254712345678")
    engine.handle_event(SuccessEvent(reference=init.reference, gateway_fee_cents=40))

    pending = engine.refund_item(init.transaction_id, order.items[0].id)
    assert pending.outcome == "refund_pending"
    assert "out of band" in pending.message
    assert {e.method for e in store.entries if e.event_id == pending.event_id} == {"manual"}

    done = engine.complete_refund(init.transaction_id, order.items[0].id)
    again = engine.complete_refund(init.transaction_id, order.items[0].id)

    assert done.outcome == "refund_completed"
    assert again.outcome == "noop"
    assert store.transactions[init.transaction_id].items[0].refund_status == m.REFUND_COMPLETED
    assert store.balance(seller_id) == 0


def test_complete_refund_without_request(settled, engine):
    order, confirm = settled
    with pytest.raises(BusinessRuleError) as exc:
        engine.complete_refund(confirm.transaction_id, _item_id(order))
    assert exc.value.code == "REFUND_NOT_REQUESTED"
