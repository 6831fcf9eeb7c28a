# app/ledger/repository.py
from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable, Optional
from uuid import UUID

from psycopg2.extensions import connection as PGConn
from psycopg2.extras import Json, RealDictCursor

from app.ledger.store import LedgerStore
from app.settlement.errors import NotFoundError, WriteConflict
from app.settlement.model import (
    TX_ACTIVE,
    Account,
    BalanceEntry,
    Order,
    OrderLine,
    Transaction,
    TransactionItem,
)
from app.webhooks.repository import insert_webhook_event


_TX_COLUMNS = """
  id, order_id, buyer_id, gateway, gateway_reference,
  total_amount_cents, delivery_fee_cents, gateway_fee_cents, net_received_cents,
  status, payment_method, paid_at, is_reversed, version
"""

_ITEM_COLUMNS = """
  item_id, seller_id, item_amount_cents, platform_commission_cents, seller_share_cents,
  gateway_fee_cents, transfer_fee_cents, net_commission_cents, owed_amount_cents,
  payout_status, payout_reference, refund_status, refunded_amount_cents, return_status
"""

_ACCOUNT_COLUMNS = """
  id, balance_cents, pending_orders_count, order_count, sales_count, total_sales_cents,
  subaccount_code, recipient_code, email, phone
"""


def _lock_clause(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


def _order_line(row: dict) -> OrderLine:
    return OrderLine(
        id=row["id"],
        seller_id=row["seller_id"],
        product_ref=row["product_ref"],
        quantity=int(row["quantity"]),
        unit_price_cents=int(row["unit_price_cents"]),
        status=row["status"],
        cancelled=bool(row["cancelled"]),
    )


def _tx_item(row: dict) -> TransactionItem:
    return TransactionItem(
        item_id=row["item_id"],
        seller_id=row["seller_id"],
        item_amount_cents=int(row["item_amount_cents"]),
        platform_commission_cents=int(row["platform_commission_cents"]),
        seller_share_cents=int(row["seller_share_cents"]),
        gateway_fee_cents=int(row["gateway_fee_cents"]),
        transfer_fee_cents=int(row["transfer_fee_cents"]),
        net_commission_cents=int(row["net_commission_cents"]),
        owed_amount_cents=int(row["owed_amount_cents"]),
        payout_status=row["payout_status"],
        payout_reference=row["payout_reference"],
        refund_status=row["refund_status"],
        refunded_amount_cents=int(row["refunded_amount_cents"]),
        return_status=row["return_status"],
    )


def _account(row: dict) -> Account:
    return Account(
        id=row["id"],
        balance_cents=int(row["balance_cents"]),
        pending_orders_count=int(row["pending_orders_count"]),
        order_count=int(row["order_count"]),
        sales_count=int(row["sales_count"]),
        total_sales_cents=int(row["total_sales_cents"]),
        subaccount_code=row["subaccount_code"],
        recipient_code=row["recipient_code"],
        email=row["email"],
        phone=row["phone"],
    )


def _entry(row: dict) -> BalanceEntry:
    return BalanceEntry(
        user_id=row["user_id"],
        amount_cents=int(row["amount_cents"]),
        kind=row["kind"],
        event_id=row["event_id"],
        method=row["method"],
        status=row["status"],
        order_id=row["order_id"],
        item_id=row["item_id"],
        reference=row["reference"],
        created_at=row["created_at"],
    )


class PostgresLedgerStore(LedgerStore):
    """psycopg2 implementation over the market.* schema."""

    # -----------------------
    # Orders
    # -----------------------
    def get_order(self, conn: PGConn, order_id: UUID, *, for_update: bool = False) -> Optional[Order]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, customer_id, total_amount_cents, status, delivery_address, transaction_id, version
                FROM market.orders
                WHERE id = %s
                """
                + _lock_clause(for_update),
                (order_id,),
            )
            row = cur.fetchone()
            if not row:
                return None

            cur.execute(
                """
                SELECT id, seller_id, product_ref, quantity, unit_price_cents, status, cancelled
                FROM market.order_items
                WHERE order_id = %s
                ORDER BY position ASC, id ASC
                """,
                (order_id,),
            )
            lines = [_order_line(r) for r in cur.fetchall()]

        return Order(
            id=row["id"],
            customer_id=row["customer_id"],
            items=lines,
            total_amount_cents=int(row["total_amount_cents"]),
            status=row["status"],
            delivery_address=row["delivery_address"],
            transaction_id=row["transaction_id"],
            version=int(row["version"]),
        )

    def update_order(self, conn: PGConn, order: Order) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE market.orders
                SET status = %s,
                    transaction_id = %s,
                    version = version + 1,
                    updated_at = now()
                WHERE id = %s AND version = %s
                """,
                (order.status, order.transaction_id, order.id, order.version),
            )
            if cur.rowcount != 1:
                raise WriteConflict(f"order {order.id} changed concurrently")
        order.version += 1

    # -----------------------
    # Transactions
    # -----------------------
    def _load_transaction(self, cur, where: str, param: Any, for_update: bool) -> Optional[Transaction]:
        cur.execute(
            f"SELECT {_TX_COLUMNS} FROM market.transactions WHERE {where}" + _lock_clause(for_update),
            (param,),
        )
        row = cur.fetchone()
        if not row:
            return None

        cur.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM market.transaction_items
            WHERE transaction_id = %s
            ORDER BY position ASC
            """,
            (row["id"],),
        )
        items = [_tx_item(r) for r in cur.fetchall()]

        return Transaction(
            id=row["id"],
            order_id=row["order_id"],
            buyer_id=row["buyer_id"],
            gateway=row["gateway"],
            gateway_reference=row["gateway_reference"],
            total_amount_cents=int(row["total_amount_cents"]),
            delivery_fee_cents=int(row["delivery_fee_cents"]),
            gateway_fee_cents=int(row["gateway_fee_cents"]),
            net_received_cents=int(row["net_received_cents"]),
            status=row["status"],
            items=items,
            payment_method=row["payment_method"],
            paid_at=row["paid_at"],
            is_reversed=bool(row["is_reversed"]),
            version=int(row["version"]),
        )

    def get_transaction(self, conn: PGConn, transaction_id: UUID, *, for_update: bool = False) -> Optional[Transaction]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            return self._load_transaction(cur, "id = %s", transaction_id, for_update)

    def get_transaction_by_reference(
        self, conn: PGConn, reference: str, *, for_update: bool = False
    ) -> Optional[Transaction]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            return self._load_transaction(cur, "gateway_reference = %s", reference, for_update)

    def find_active_transaction(self, conn: PGConn, order_id: UUID) -> Optional[Transaction]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id FROM market.transactions
                WHERE order_id = %s AND status = ANY(%s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (order_id, list(TX_ACTIVE)),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._load_transaction(cur, "id = %s", row["id"], False)

    def insert_transaction(self, conn: PGConn, tx: Transaction) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO market.transactions (
                  id, order_id, buyer_id, gateway, gateway_reference,
                  total_amount_cents, delivery_fee_cents, gateway_fee_cents, net_received_cents,
                  status, payment_method, paid_at, is_reversed, version
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    tx.id, tx.order_id, tx.buyer_id, tx.gateway, tx.gateway_reference,
                    tx.total_amount_cents, tx.delivery_fee_cents, tx.gateway_fee_cents, tx.net_received_cents,
                    tx.status, tx.payment_method, tx.paid_at, tx.is_reversed, tx.version,
                ),
            )
            for position, item in enumerate(tx.items):
                cur.execute(
                    f"""
                    INSERT INTO market.transaction_items (transaction_id, position, {_ITEM_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tx.id, position,
                        item.item_id, item.seller_id, item.item_amount_cents, item.platform_commission_cents,
                        item.seller_share_cents, item.gateway_fee_cents, item.transfer_fee_cents,
                        item.net_commission_cents, item.owed_amount_cents, item.payout_status,
                        item.payout_reference, item.refund_status, item.refunded_amount_cents, item.return_status,
                    ),
                )

    def update_transaction(self, conn: PGConn, tx: Transaction) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE market.transactions
                SET gateway_reference = %s,
                    gateway_fee_cents = %s,
                    net_received_cents = %s,
                    status = %s,
                    payment_method = %s,
                    paid_at = %s,
                    is_reversed = %s,
                    version = version + 1,
                    updated_at = now()
                WHERE id = %s AND version = %s
                """,
                (
                    tx.gateway_reference, tx.gateway_fee_cents, tx.net_received_cents, tx.status,
                    tx.payment_method, tx.paid_at, tx.is_reversed, tx.id, tx.version,
                ),
            )
            if cur.rowcount != 1:
                raise WriteConflict(f"transaction {tx.id} changed concurrently")

            for item in tx.items:
                cur.execute(
                    """
                    UPDATE market.transaction_items
                    SET platform_commission_cents = %s,
                        seller_share_cents = %s,
                        gateway_fee_cents = %s,
                        transfer_fee_cents = %s,
                        net_commission_cents = %s,
                        owed_amount_cents = %s,
                        payout_status = %s,
                        payout_reference = %s,
                        refund_status = %s,
                        refunded_amount_cents = %s,
                        return_status = %s
                    WHERE transaction_id = %s AND item_id = %s
                    """,
                    (
                        item.platform_commission_cents, item.seller_share_cents, item.gateway_fee_cents,
                        item.transfer_fee_cents, item.net_commission_cents, item.owed_amount_cents,
                        item.payout_status, item.payout_reference, item.refund_status,
                        item.refunded_amount_cents, item.return_status, tx.id, item.item_id,
                    ),
                )
        tx.version += 1

    def delete_transaction(self, conn: PGConn, transaction_id: UUID) -> None:
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM market.transactions WHERE id = %s AND status IN ('pending', 'gateway_initiated')",
                (transaction_id,),
            )

    # -----------------------
    # Accounts / balances
    # -----------------------
    def get_accounts(self, conn: PGConn, user_ids: Iterable[UUID], *, for_update: bool = False) -> dict[UUID, Account]:
        ids = sorted({u for u in user_ids}, key=str)
        if not ids:
            return {}
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            # ordered locking keeps concurrent settlements from deadlocking each other
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM market.users WHERE id = ANY(%s::uuid[]) ORDER BY id"
                + _lock_clause(for_update),
                ([str(i) for i in ids],),
            )
            return {row["id"]: _account(row) for row in cur.fetchall()}

    def list_accounts(self, conn: PGConn) -> list[Account]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM market.users ORDER BY id")
            return [_account(r) for r in cur.fetchall()]

    def post_entries(self, conn: PGConn, entries: list[BalanceEntry]) -> None:
        deltas: dict[UUID, int] = defaultdict(int)
        with conn.cursor() as cur:
            for e in entries:
                cur.execute(
                    """
                    INSERT INTO market.balance_entries (
                      user_id, amount_cents, kind, event_id, method, status, order_id, item_id, reference
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        e.user_id, e.amount_cents, e.kind, e.event_id, e.method, e.status,
                        e.order_id, e.item_id, e.reference,
                    ),
                )
                deltas[e.user_id] += int(e.amount_cents)

            for user_id in sorted(deltas, key=str):
                cur.execute(
                    "UPDATE market.users SET balance_cents = balance_cents + %s WHERE id = %s",
                    (deltas[user_id], user_id),
                )
                if cur.rowcount != 1:
                    raise NotFoundError(f"account {user_id} not found", code="ACCOUNT_NOT_FOUND")

    def list_entries(
        self, conn: PGConn, *, user_id: Optional[UUID] = None, event_id: Optional[UUID] = None
    ) -> list[BalanceEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_id is not None:
            clauses.append("event_id = %s")
            params.append(event_id)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT user_id, amount_cents, kind, event_id, method, status, order_id, item_id, reference, created_at
                FROM market.balance_entries
                {where}
                ORDER BY id ASC
                """,
                tuple(params),
            )
            return [_entry(r) for r in cur.fetchall()]

    def adjust_counters(
        self,
        conn: PGConn,
        user_id: UUID,
        *,
        pending_orders: int = 0,
        orders: int = 0,
        sales: int = 0,
        sales_cents: int = 0,
    ) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE market.users
                SET pending_orders_count = GREATEST(pending_orders_count + %s, 0),
                    order_count = GREATEST(order_count + %s, 0),
                    sales_count = sales_count + %s,
                    total_sales_cents = total_sales_cents + %s
                WHERE id = %s
                """,
                (pending_orders, orders, sales, sales_cents, user_id),
            )

    def restore_inventory(self, conn: PGConn, product_ref: str, quantity: int) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE market.listings
                SET inventory = inventory + %s,
                    orders_count = GREATEST(orders_count - 1, 0),
                    is_sold = FALSE
                WHERE product_ref = %s
                """,
                (quantity, product_ref),
            )

    # -----------------------
    # Webhook audit
    # -----------------------
    def record_webhook_event(self, conn: PGConn, **fields: Any) -> None:
        headers = fields.pop("headers", None)
        body = fields.pop("body", None)
        insert_webhook_event(
            conn,
            headers=Json(headers or {}),
            body=Json(body) if body is not None else None,
            **fields,
        )
