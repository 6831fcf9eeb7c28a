# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Protocol, Sequence

GatewayStatus = Literal["initiated", "success", "failed", "pending", "reversed", "transferred"]


@dataclass(frozen=True)
class GatewayResult:
    status: GatewayStatus
    reference: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    # split gateway extras
    authorization_url: Optional[str] = None
    amount_cents: Optional[int] = None
    fee_cents: Optional[int] = None
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None

    # None => let the caller classify
    retryable: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.status in ("initiated", "success", "transferred")


class SplitGateway(Protocol):
    """Gateway A: split at charge time, pollable, refundable via API."""

    name: str

    def initialize(
        self,
        *,
        reference: str,
        amount_cents: int,
        email: str,
        split: Sequence[tuple[str, Decimal]],
        metadata: dict[str, Any],
    ) -> GatewayResult: ...

    def verify(self, reference: str) -> GatewayResult: ...

    def refund(self, *, reference: str, amount_cents: Optional[int], metadata: dict[str, Any]) -> GatewayResult: ...

    def transfer(self, *, reference: str, amount_cents: int, recipient: Optional[str], reason: str) -> GatewayResult: ...


class PushGateway(Protocol):
    """Gateway B: phone push, acknowledgement only, final status by webhook."""

    name: str

    def push(self, *, amount_cents: int, phone: str, account_reference: str, description: str) -> GatewayResult: ...

    def transfer(self, *, reference: str, amount_cents: int, recipient: Optional[str], reason: str) -> GatewayResult: ...
