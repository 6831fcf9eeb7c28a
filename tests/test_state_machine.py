import pytest
from fastapi import HTTPException

from app.settlement import model as m
from app.settlement.errors import BusinessRuleError
from app.settlement.state_machine import InvalidTransition, assert_transition, can_transition
from services.settlement_errors import raise_http_from_settlement_error


@pytest.mark.parametrize(
    "old,new",
    [
        (m.TX_PENDING, m.TX_GATEWAY_INITIATED),
        (m.TX_GATEWAY_INITIATED, m.TX_COMPLETED),
        (m.TX_GATEWAY_INITIATED, m.TX_FAILED),
        (m.TX_PENDING, m.TX_REVERSED),
    ],
)
def test_transaction_allowed(old, new):
    assert_transition("transaction", old, new)


@pytest.mark.parametrize("terminal", [m.TX_COMPLETED, m.TX_FAILED, m.TX_REVERSED])
def test_terminal_transaction_states_are_final(terminal):
    for new in (m.TX_PENDING, m.TX_COMPLETED, m.TX_FAILED):
        assert not can_transition("transaction", terminal, new)


def test_refund_cannot_skip_pending():
    with pytest.raises(InvalidTransition):
        assert_transition("refund", m.REFUND_NONE, m.REFUND_COMPLETED)
    assert can_transition("refund", m.REFUND_PENDING, m.REFUND_RETURNED)


def test_payout_transferred_is_final():
    assert can_transition("payout", m.PAYOUT_MANUAL_PENDING, m.PAYOUT_TRANSFERRED)
    with pytest.raises(InvalidTransition):
        assert_transition("payout", m.PAYOUT_TRANSFERRED, m.PAYOUT_PENDING)


def test_return_lifecycle():
    assert can_transition("return", m.RETURN_NONE, m.RETURN_PENDING)
    assert can_transition("return", m.RETURN_PENDING, m.RETURN_REJECTED)
    assert not can_transition("return", m.RETURN_REJECTED, m.RETURN_CONFIRMED)


def test_illegal_transition_maps_to_typed_conflict():
    assert issubclass(InvalidTransition, BusinessRuleError)

    with pytest.raises(HTTPException) as exc:
        try:
            assert_transition("transaction", m.TX_FAILED, m.TX_COMPLETED)
        except Exception as e:
            raise_http_from_settlement_error(e)

    assert exc.value.status_code == 409
    assert exc.value.detail["error"] == "INVALID_TRANSITION"
    assert "failed -> completed" in exc.value.detail["message"]
