from __future__ import annotations

import logging

from fastapi import HTTPException

from app.settlement.errors import (
    BusinessRuleError,
    GatewayError,
    NotFoundError,
    RetryExhausted,
    SettlementError,
    SignatureError,
    ValidationError,
)

logger = logging.getLogger("marketsettle.settlement")

# Specific codes first; class fallbacks below.
ERROR_HTTP_MAP: dict[str, int] = {
    "AMOUNT_MISMATCH": 422,
    "INVALID_PHONE": 422,
    "INVALID_AMOUNT": 422,
    "MISSING_EMAIL": 422,
    "SPLIT_EXCEEDS_100": 422,
    "MISSING_SUBACCOUNT": 422,
    "UNKNOWN_GATEWAY": 400,
    "ORDER_NOT_FOUND": 404,
    "TRANSACTION_NOT_FOUND": 404,
    "ITEM_NOT_FOUND": 404,
    "ACCOUNT_NOT_FOUND": 404,
    "TRANSACTION_OUTSTANDING": 409,
    "ORDER_NOT_PAYABLE": 409,
    "INSUFFICIENT_BALANCE": 409,
    "REFUND_EXCEEDS_TOTAL": 409,
    "PAYOUT_NOT_ELIGIBLE": 409,
    "INVALID_TRANSITION": 409,
    "GATEWAY_UNAVAILABLE": 503,
    "RETRY_EXHAUSTED": 503,
    "INVALID_SIGNATURE": 401,
}

_CLASS_FALLBACK: list[tuple[type, int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (BusinessRuleError, 409),
    (SignatureError, 401),
    (RetryExhausted, 503),
    (GatewayError, 502),
]


def http_status_for(exc: SettlementError) -> int:
    status = ERROR_HTTP_MAP.get(exc.code)
    if status is not None:
        return status
    for cls, fallback in _CLASS_FALLBACK:
        if isinstance(exc, cls):
            return fallback
    return 500


def raise_http_from_settlement_error(exc: Exception) -> None:
    """
    Convert settlement errors into HTTP responses with {error, message};
    anything else fails closed.
    """
    if isinstance(exc, SettlementError):
        status = http_status_for(exc)
        raise HTTPException(status_code=status, detail={"error": exc.code, "message": exc.message})

    logger.exception("unhandled_settlement_error error=%s", type(exc).__name__)
    raise HTTPException(status_code=500, detail={"error": "INTERNAL_ERROR", "message": "Internal server error"})
