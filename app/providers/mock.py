# app/providers/mock.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from app.providers.base import GatewayResult
from app.settlement.errors import GatewayError


class MockSplitGateway:
    """
    Test/dev split gateway.

    verify_status / verify_fee_cents drive what verify() reports; every call is
    recorded in .calls so tests can assert on what was sent.
    """

    name = "split"

    def __init__(
        self,
        *,
        succeed: bool = True,
        verify_status: str = "success",
        verify_fee_cents: Optional[int] = None,
        retryable: bool = False,
    ):
        self.succeed = succeed
        self.verify_status = verify_status
        self.verify_fee_cents = verify_fee_cents
        self.retryable = retryable
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _fail(self, op: str):
        raise GatewayError(f"mock {op} failed", code="GATEWAY_REJECTED", retryable=self.retryable)

    def initialize(self, *, reference, amount_cents, email, split, metadata) -> GatewayResult:
        self.calls.append(("initialize", {"reference": reference, "amount_cents": amount_cents, "email": email, "split": list(split), "metadata": metadata}))
        if not self.succeed:
            self._fail("initialize")
        return GatewayResult(
            status="initiated",
            reference=reference,
            authorization_url=f"https://checkout.mock/{reference}",
            response={"mock": True},
        )

    def verify(self, reference: str) -> GatewayResult:
        self.calls.append(("verify", {"reference": reference}))
        return GatewayResult(
            status=self.verify_status,
            reference=reference,
            fee_cents=self.verify_fee_cents,
            paid_at=datetime.now(timezone.utc),
            channel="card",
            response={"mock": True},
        )

    def refund(self, *, reference, amount_cents, metadata) -> GatewayResult:
        self.calls.append(("refund", {"reference": reference, "amount_cents": amount_cents, "metadata": metadata}))
        if not self.succeed:
            self._fail("refund")
        return GatewayResult(status="pending", reference=reference, amount_cents=amount_cents, response={"mock": True})

    def transfer(self, *, reference, amount_cents, recipient, reason) -> GatewayResult:
        self.calls.append(("transfer", {"reference": reference, "amount_cents": amount_cents, "recipient": recipient}))
        if not self.succeed:
            self._fail("transfer")
        return GatewayResult(status="transferred", reference=reference, response={"mock": True})


class MockPushGateway:
    name = "push"

    def __init__(self, *, succeed: bool = True, retryable: bool = False):
        self.succeed = succeed
        self.retryable = retryable
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def push(self, *, amount_cents, phone, account_reference, description) -> GatewayResult:
        self.calls.append(("push", {"amount_cents": amount_cents, "phone": phone, "account_reference": account_reference}))
        if not self.succeed:
            raise GatewayError("mock push rejected", code="GATEWAY_REJECTED", retryable=self.retryable)
        return GatewayResult(status="initiated", reference=f"mock-{account_reference}-{len(self.calls)}", response={"mock": True})

    def transfer(self, *, reference, amount_cents, recipient, reason) -> GatewayResult:
        self.calls.append(("transfer", {"reference": reference, "amount_cents": amount_cents}))
        if not self.succeed:
            raise GatewayError("mock transfer failed", code="TRANSFER_FAILED", retryable=self.retryable)
        return GatewayResult(status="transferred", reference=reference, response={"mock": True})
