# app/settlement/state_machine.py
from app.settlement import model as m
from app.settlement.errors import BusinessRuleError


class InvalidTransition(BusinessRuleError):
    code = "INVALID_TRANSITION"


TRANSACTION_ALLOWED = {
    m.TX_PENDING: {m.TX_GATEWAY_INITIATED, m.TX_COMPLETED, m.TX_FAILED, m.TX_REVERSED},
    m.TX_GATEWAY_INITIATED: {m.TX_COMPLETED, m.TX_FAILED, m.TX_REVERSED},
    m.TX_COMPLETED: set(),
    m.TX_FAILED: set(),
    m.TX_REVERSED: set(),
}

PAYOUT_ALLOWED = {
    m.PAYOUT_MANUAL_PENDING: {m.PAYOUT_TRANSFERRED, m.PAYOUT_FAILED},
    m.PAYOUT_PENDING: {m.PAYOUT_TRANSFERRED, m.PAYOUT_FAILED},
    m.PAYOUT_TRANSFERRED: set(),
    m.PAYOUT_FAILED: set(),
}

REFUND_ALLOWED = {
    m.REFUND_NONE: {m.REFUND_PENDING},
    m.REFUND_PENDING: {m.REFUND_COMPLETED, m.REFUND_RETURNED},
    m.REFUND_COMPLETED: set(),
    m.REFUND_RETURNED: set(),
}

RETURN_ALLOWED = {
    m.RETURN_NONE: {m.RETURN_PENDING},
    m.RETURN_PENDING: {m.RETURN_CONFIRMED, m.RETURN_REJECTED},
    m.RETURN_CONFIRMED: set(),
    m.RETURN_REJECTED: set(),
}

_TABLES = {
    "transaction": TRANSACTION_ALLOWED,
    "payout": PAYOUT_ALLOWED,
    "refund": REFUND_ALLOWED,
    "return": RETURN_ALLOWED,
}


def assert_transition(kind: str, old: str, new: str) -> None:
    if new not in _TABLES[kind].get(old, set()):
        raise InvalidTransition(f"Illegal {kind} transition: {old} -> {new}")


def can_transition(kind: str, old: str, new: str) -> bool:
    return new in _TABLES[kind].get(old, set())
