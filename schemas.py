# schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field, EmailStr
from uuid import UUID
from typing import Optional, List, Literal

GatewayName = Literal["split", "push"]


# -------- SETTLEMENT --------
class InitiateSettlementRequest(BaseModel):
    order_id: UUID
    gateway: GatewayName
    delivery_fee_cents: int = Field(ge=0)
    buyer_email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=32)


class ResolveReturnRequest(BaseModel):
    approve: bool


class SettlementResponse(BaseModel):
    operation: str
    outcome: str
    transaction_id: Optional[UUID] = None
    order_id: Optional[UUID] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    amount_cents: int = 0
    redirect_url: Optional[str] = None
    message: Optional[str] = None
    event_id: Optional[UUID] = None
    item_ids: List[UUID] = Field(default_factory=list)


# -------- WEBHOOKS --------
class WebhookAck(BaseModel):
    ok: bool = True
    gateway: str
    outcome: str
    reference: Optional[str] = None


# -------- ADMIN --------
class AccountIntegrity(BaseModel):
    account_id: UUID
    balance_cents: int
    ledger_cents: int
    diff_cents: int
    ok: bool


class UnbalancedEvent(BaseModel):
    event_id: UUID
    total_cents: int


class LedgerIntegrityResponse(BaseModel):
    ok: bool
    accounts_checked: int
    events_checked: int
    account_mismatches: List[AccountIntegrity]
    unbalanced_events: List[UnbalancedEvent]
