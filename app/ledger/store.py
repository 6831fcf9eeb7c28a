# app/ledger/store.py
from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol
from uuid import UUID

from app.settlement.model import Account, BalanceEntry, Order, Transaction


class LedgerStore(Protocol):
    """
    Durable storage for orders, settlement transactions and user balances.

    Every method runs on the caller's connection; the caller owns the commit.
    Versioned updates raise WriteConflict when the row moved underneath.
    """

    def get_order(self, conn: Any, order_id: UUID, *, for_update: bool = False) -> Optional[Order]: ...

    def update_order(self, conn: Any, order: Order) -> None: ...

    def get_transaction(self, conn: Any, transaction_id: UUID, *, for_update: bool = False) -> Optional[Transaction]: ...

    def get_transaction_by_reference(
        self, conn: Any, reference: str, *, for_update: bool = False
    ) -> Optional[Transaction]: ...

    def find_active_transaction(self, conn: Any, order_id: UUID) -> Optional[Transaction]: ...

    def insert_transaction(self, conn: Any, tx: Transaction) -> None: ...

    def update_transaction(self, conn: Any, tx: Transaction) -> None: ...

    def delete_transaction(self, conn: Any, transaction_id: UUID) -> None: ...

    def get_accounts(self, conn: Any, user_ids: Iterable[UUID], *, for_update: bool = False) -> dict[UUID, Account]: ...

    def list_accounts(self, conn: Any) -> list[Account]: ...

    def post_entries(self, conn: Any, entries: list[BalanceEntry]) -> None: ...

    def list_entries(
        self, conn: Any, *, user_id: Optional[UUID] = None, event_id: Optional[UUID] = None
    ) -> list[BalanceEntry]: ...

    def adjust_counters(
        self,
        conn: Any,
        user_id: UUID,
        *,
        pending_orders: int = 0,
        orders: int = 0,
        sales: int = 0,
        sales_cents: int = 0,
    ) -> None: ...

    def restore_inventory(self, conn: Any, product_ref: str, quantity: int) -> None: ...

    def record_webhook_event(self, conn: Any, **fields: Any) -> None: ...
