# app/settlement/model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID


GATEWAY_SPLIT = "split"
GATEWAY_PUSH = "push"
GATEWAYS = (GATEWAY_SPLIT, GATEWAY_PUSH)

# Transaction.status
TX_PENDING = "pending"
TX_GATEWAY_INITIATED = "gateway_initiated"
TX_COMPLETED = "completed"
TX_FAILED = "failed"
TX_REVERSED = "reversed"
TX_ACTIVE = (TX_PENDING, TX_GATEWAY_INITIATED, TX_COMPLETED)

# Order.status
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

# OrderLine.status
LINE_DELIVERED = "delivered"

# TransactionItem.payout_status
PAYOUT_MANUAL_PENDING = "manual_pending"
PAYOUT_PENDING = "pending"
PAYOUT_TRANSFERRED = "transferred"
PAYOUT_FAILED = "failed"
PAYOUT_PRE_TRANSFER = (PAYOUT_MANUAL_PENDING, PAYOUT_PENDING)

# TransactionItem.refund_status
REFUND_NONE = "none"
REFUND_PENDING = "pending"
REFUND_RETURNED = "returned"
REFUND_COMPLETED = "completed"

# TransactionItem.return_status
RETURN_NONE = "none"
RETURN_PENDING = "pending"
RETURN_CONFIRMED = "confirmed"
RETURN_REJECTED = "rejected"


@dataclass
class OrderLine:
    id: UUID
    seller_id: UUID
    product_ref: str
    quantity: int
    unit_price_cents: int
    status: str = "pending"
    cancelled: bool = False

    @property
    def amount_cents(self) -> int:
        return int(self.unit_price_cents) * int(self.quantity)


@dataclass
class Order:
    id: UUID
    customer_id: UUID
    items: list[OrderLine]
    total_amount_cents: int
    status: str = ORDER_PENDING
    delivery_address: Optional[dict[str, Any]] = None
    transaction_id: Optional[UUID] = None
    version: int = 0

    def active_items(self) -> list[OrderLine]:
        return [i for i in self.items if not i.cancelled]

    def line(self, item_id: UUID) -> Optional[OrderLine]:
        for i in self.items:
            if i.id == item_id:
                return i
        return None

    def seller_ids(self) -> list[UUID]:
        seen: list[UUID] = []
        for i in self.active_items():
            if i.seller_id not in seen:
                seen.append(i.seller_id)
        return seen


@dataclass
class TransactionItem:
    item_id: UUID
    seller_id: UUID
    item_amount_cents: int
    platform_commission_cents: int
    seller_share_cents: int
    gateway_fee_cents: int
    transfer_fee_cents: int
    net_commission_cents: int
    owed_amount_cents: int
    payout_status: str = PAYOUT_MANUAL_PENDING
    payout_reference: Optional[str] = None
    refund_status: str = REFUND_NONE
    refunded_amount_cents: int = 0
    return_status: str = RETURN_NONE


@dataclass
class Transaction:
    id: UUID
    order_id: UUID
    buyer_id: UUID
    gateway: str
    gateway_reference: str
    total_amount_cents: int
    delivery_fee_cents: int
    gateway_fee_cents: int
    net_received_cents: int
    status: str = TX_PENDING
    items: list[TransactionItem] = field(default_factory=list)
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    is_reversed: bool = False
    version: int = 0

    def item(self, item_id: UUID) -> Optional[TransactionItem]:
        for i in self.items:
            if i.item_id == item_id:
                return i
        return None

    @property
    def refunded_total_cents(self) -> int:
        return sum(int(i.refunded_amount_cents) for i in self.items)


@dataclass
class Account:
    id: UUID
    balance_cents: int = 0
    pending_orders_count: int = 0
    order_count: int = 0
    sales_count: int = 0
    total_sales_cents: int = 0
    subaccount_code: Optional[str] = None
    recipient_code: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class BalanceEntry:
    """One signed line of a user's payout history."""

    user_id: UUID
    amount_cents: int
    kind: str
    event_id: UUID
    method: Optional[str] = None
    status: str = "completed"
    order_id: Optional[UUID] = None
    item_id: Optional[UUID] = None
    reference: Optional[str] = None
    created_at: Optional[datetime] = None
