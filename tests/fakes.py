# tests/fakes.py
"""
In-memory LedgerStore with Postgres-like unit-of-work semantics: reads hand out
copies, versioned writes raise WriteConflict, and connect() rolls every change
back when the block raises.
"""
from __future__ import annotations

import copy
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import UUID

from app.settlement import model as m
from app.settlement.errors import NotFoundError, WriteConflict


PLATFORM_ID = UUID("00000000-0000-0000-0000-000000000001")
CLEARING_ID = UUID("00000000-0000-0000-0000-000000000002")


class InMemoryLedgerStore:
    def __init__(self):
        self.orders: dict[UUID, m.Order] = {}
        self.transactions: dict[UUID, m.Transaction] = {}
        self.accounts: dict[UUID, m.Account] = {}
        self.entries: list[m.BalanceEntry] = []
        self.inventory: dict[str, int] = {}
        self.webhook_events: list[dict[str, Any]] = []
        self.commits = 0
        self.rollbacks = 0
        self._conflicts_left = 0
        self._conflict_exc: Optional[BaseException] = None

    # -----------------------
    # unit of work
    # -----------------------
    def _state(self):
        return (self.orders, self.transactions, self.accounts, self.entries, self.inventory, self.webhook_events)

    @contextmanager
    def connect(self):
        snapshot = copy.deepcopy(self._state())
        try:
            yield self
            if self._conflicts_left:
                self._conflicts_left -= 1
                raise self._conflict_exc or WriteConflict("simulated concurrent commit")
        except Exception:
            (self.orders, self.transactions, self.accounts, self.entries, self.inventory, self.webhook_events) = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1

    def fail_next_commits(self, n: int, exc: Optional[BaseException] = None) -> None:
        """The next n units of work fail at commit time (and roll back)."""
        self._conflicts_left = n
        self._conflict_exc = exc

    # -----------------------
    # seeding / inspection
    # -----------------------
    def add_account(self, user_id: UUID, **fields: Any) -> m.Account:
        acc = m.Account(id=user_id, **fields)
        self.accounts[user_id] = acc
        return acc

    def balance(self, user_id: UUID) -> int:
        return self.accounts[user_id].balance_cents

    def total_balance(self) -> int:
        return sum(a.balance_cents for a in self.accounts.values())

    # -----------------------
    # orders
    # -----------------------
    def get_order(self, conn, order_id: UUID, *, for_update: bool = False) -> Optional[m.Order]:
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    def update_order(self, conn, order: m.Order) -> None:
        current = self.orders.get(order.id)
        if current is None or current.version != order.version:
            raise WriteConflict(f"order {order.id} changed concurrently")
        stored = copy.deepcopy(order)
        stored.version += 1
        self.orders[order.id] = stored
        order.version += 1

    # -----------------------
    # transactions
    # -----------------------
    def get_transaction(self, conn, transaction_id: UUID, *, for_update: bool = False) -> Optional[m.Transaction]:
        tx = self.transactions.get(transaction_id)
        return copy.deepcopy(tx) if tx is not None else None

    def get_transaction_by_reference(self, conn, reference: str, *, for_update: bool = False) -> Optional[m.Transaction]:
        for tx in self.transactions.values():
            if tx.gateway_reference == reference:
                return copy.deepcopy(tx)
        return None

    def find_active_transaction(self, conn, order_id: UUID) -> Optional[m.Transaction]:
        for tx in self.transactions.values():
            if tx.order_id == order_id and tx.status in m.TX_ACTIVE:
                return copy.deepcopy(tx)
        return None

    def insert_transaction(self, conn, tx: m.Transaction) -> None:
        if any(t.gateway_reference == tx.gateway_reference for t in self.transactions.values()):
            raise WriteConflict(f"duplicate gateway reference {tx.gateway_reference}")
        if self.find_active_transaction(conn, tx.order_id) is not None:
            raise WriteConflict(f"order {tx.order_id} already has an active transaction")
        self.transactions[tx.id] = copy.deepcopy(tx)

    def update_transaction(self, conn, tx: m.Transaction) -> None:
        current = self.transactions.get(tx.id)
        if current is None or current.version != tx.version:
            raise WriteConflict(f"transaction {tx.id} changed concurrently")
        stored = copy.deepcopy(tx)
        stored.version += 1
        self.transactions[tx.id] = stored
        tx.version += 1

    def delete_transaction(self, conn, transaction_id: UUID) -> None:
        tx = self.transactions.get(transaction_id)
        if tx is not None and tx.status in (m.TX_PENDING, m.TX_GATEWAY_INITIATED):
            del self.transactions[transaction_id]

    # -----------------------
    # balances
    # -----------------------
    def get_accounts(self, conn, user_ids: Iterable[UUID], *, for_update: bool = False) -> dict[UUID, m.Account]:
        return {uid: copy.deepcopy(self.accounts[uid]) for uid in set(user_ids) if uid in self.accounts}

    def list_accounts(self, conn) -> list[m.Account]:
        return [copy.deepcopy(a) for a in self.accounts.values()]

    def post_entries(self, conn, entries: list[m.BalanceEntry]) -> None:
        now = datetime.now(timezone.utc)
        for e in entries:
            acc = self.accounts.get(e.user_id)
            if acc is None:
                raise NotFoundError(f"Account {e.user_id} not found", code="ACCOUNT_NOT_FOUND")
            acc.balance_cents += int(e.amount_cents)
            self.entries.append(replace(e, created_at=e.created_at or now))

    def list_entries(self, conn, *, user_id: Optional[UUID] = None, event_id: Optional[UUID] = None) -> list[m.BalanceEntry]:
        return [
            e
            for e in self.entries
            if (user_id is None or e.user_id == user_id) and (event_id is None or e.event_id == event_id)
        ]

    def adjust_counters(self, conn, user_id: UUID, *, pending_orders=0, orders=0, sales=0, sales_cents=0) -> None:
        acc = self.accounts.get(user_id)
        if acc is None:
            return
        acc.pending_orders_count = max(acc.pending_orders_count + pending_orders, 0)
        acc.order_count = max(acc.order_count + orders, 0)
        acc.sales_count = max(acc.sales_count + sales, 0)
        acc.total_sales_cents = max(acc.total_sales_cents + sales_cents, 0)

    def restore_inventory(self, conn, product_ref: str, quantity: int) -> None:
        self.inventory[product_ref] = self.inventory.get(product_ref, 0) + int(quantity)

    def record_webhook_event(self, conn, **fields: Any) -> None:
        self.webhook_events.append(dict(fields))


class RecordingNotificationGateway:
    def __init__(self, *, fail_templates: Iterable[str] = ()):
        self.sent: list = []
        self.fail_templates = set(fail_templates)

    def send(self, event) -> None:
        if event.template in self.fail_templates:
            raise RuntimeError(f"notification backend down for {event.template}")
        self.sent.append(event)


def seed_order(
    store: InMemoryLedgerStore,
    lines: list[tuple[UUID, int, int]],
    *,
    delivery_fee_cents: int = 0,
    total_amount_cents: Optional[int] = None,
    cancelled: Iterable[int] = (),
    inventory: int = 0,
) -> m.Order:
    """
    lines: (seller_id, unit_price_cents, quantity). Creates missing accounts and
    the counters an order placement leaves behind (one pending order per party).
    """
    buyer_id = uuid.uuid4()
    store.add_account(buyer_id, email="buyer@example.com", pending_orders_count=1, order_count=1)

    cancelled = set(cancelled)
    order_lines: list[m.OrderLine] = []
    for idx, (seller_id, unit_price, qty) in enumerate(lines):
        if seller_id not in store.accounts:
            store.add_account(
                seller_id,
                subaccount_code=f"ACCT_{seller_id.hex[:8]}",
                recipient_code=f"RCP_{seller_id.hex[:8]}",
            )
        store.accounts[seller_id].pending_orders_count += 1
        product_ref = f"sku-{idx}-{uuid.uuid4().hex[:6]}"
        store.inventory[product_ref] = inventory
        order_lines.append(
            m.OrderLine(
                id=uuid.uuid4(),
                seller_id=seller_id,
                product_ref=product_ref,
                quantity=qty,
                unit_price_cents=unit_price,
                cancelled=idx in cancelled,
                status="cancelled" if idx in cancelled else "pending",
            )
        )

    items_total = sum(ln.amount_cents for ln in order_lines if not ln.cancelled)
    order = m.Order(
        id=uuid.uuid4(),
        customer_id=buyer_id,
        items=order_lines,
        total_amount_cents=total_amount_cents if total_amount_cents is not None else items_total + delivery_fee_cents,
    )
    store.orders[order.id] = order
    return copy.deepcopy(order)


def mark_delivered(store: InMemoryLedgerStore, order_id: UUID, *line_indexes: int) -> None:
    order = store.orders[order_id]
    for idx in line_indexes or range(len(order.items)):
        order.items[idx].status = m.LINE_DELIVERED
