# app/settlement/errors.py
from __future__ import annotations


class SettlementError(Exception):
    """Base for every error the settlement core raises on purpose."""

    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code


class ValidationError(SettlementError):
    code = "VALIDATION_ERROR"


class AmountMismatch(ValidationError):
    code = "AMOUNT_MISMATCH"


class NotFoundError(SettlementError):
    code = "NOT_FOUND"


class BusinessRuleError(SettlementError):
    code = "BUSINESS_RULE"


class InsufficientBalance(BusinessRuleError):
    code = "INSUFFICIENT_BALANCE"


class TransientConflict(SettlementError):
    code = "TRANSIENT_CONFLICT"


class WriteConflict(TransientConflict):
    """A versioned row changed underneath the current unit of work."""

    code = "WRITE_CONFLICT"


class RetryExhausted(SettlementError):
    code = "RETRY_EXHAUSTED"


class GatewayError(SettlementError):
    code = "GATEWAY_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None, retryable: bool = False, response=None):
        super().__init__(message, code=code)
        self.retryable = retryable
        self.response = response


class SignatureError(SettlementError):
    code = "INVALID_SIGNATURE"
