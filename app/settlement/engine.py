# app/settlement/engine.py
"""
Settlement engine: initiate, confirm, fail, reverse, refund, return and payout.

Every public operation runs as one atomic unit through run_atomic (or on the
caller's connection when one is passed in) and returns a SettlementResult.
Notifications ride on the result and are dispatched by the caller once the unit
has committed; nothing in here sends them.
"""
from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from app.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from app.providers.push_gateway import manual_reference, whole_units
from app.settlement import model as m
from app.settlement.config import SettlementConfig
from app.settlement.errors import (
    BusinessRuleError,
    InsufficientBalance,
    NotFoundError,
    ValidationError,
)
from app.settlement.events import (
    FailureEvent,
    RefundProcessedEvent,
    ReversalEvent,
    SuccessEvent,
)
from app.settlement.money import (
    ItemSplit,
    SplitLine,
    compute_split,
    estimate_gateway_fee,
    subaccount_split,
)
from app.settlement.retry import run_atomic
from app.settlement.state_machine import assert_transition
from services.ledger_invariants import assert_event_balanced
from services.metrics import increment_settlement_outcome

logger = logging.getLogger("marketsettle.settlement")


@dataclass(frozen=True)
class SettlementResult:
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
    item_ids: tuple[UUID, ...] = ()
    notifications: tuple[NotificationEvent, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("notifications", None)
        for key in ("transaction_id", "order_id", "event_id"):
            if out[key] is not None:
                out[key] = str(out[key])
        out["item_ids"] = [str(i) for i in self.item_ids]
        return out


def lines_from_order(order: m.Order) -> list[SplitLine]:
    return [
        SplitLine(
            item_id=line.id,
            seller_id=line.seller_id,
            unit_price_cents=line.unit_price_cents,
            quantity=line.quantity,
            cancelled=line.cancelled,
        )
        for line in order.items
    ]


def _tx_item(split: ItemSplit) -> m.TransactionItem:
    return m.TransactionItem(
        item_id=split.item_id,
        seller_id=split.seller_id,
        item_amount_cents=split.item_amount_cents,
        platform_commission_cents=split.platform_commission_cents,
        seller_share_cents=split.seller_share_cents,
        gateway_fee_cents=split.gateway_fee_cents,
        transfer_fee_cents=split.transfer_fee_cents,
        net_commission_cents=split.net_commission_cents,
        owed_amount_cents=split.owed_amount_cents,
    )


def _apply_split(item: m.TransactionItem, split: ItemSplit) -> None:
    item.platform_commission_cents = split.platform_commission_cents
    item.seller_share_cents = split.seller_share_cents
    item.gateway_fee_cents = split.gateway_fee_cents
    item.transfer_fee_cents = split.transfer_fee_cents
    item.net_commission_cents = split.net_commission_cents
    item.owed_amount_cents = split.owed_amount_cents


def _order_id_from_reference(value: Optional[str]) -> Optional[UUID]:
    if not value or not value.upper().startswith("ORDER-"):
        return None
    try:
        return UUID(value[len("ORDER-"):])
    except ValueError:
        return None


def payout_reference(tx_id: UUID, seller_id: UUID, item_ids: list[UUID]) -> str:
    """Stable per batch so a retried unit of work re-sends the same transfer."""
    digest = hashlib.sha1(
        ("|".join([str(tx_id), str(seller_id)] + sorted(str(i) for i in item_ids))).encode("utf-8")
    ).hexdigest()
    return f"PAYOUT-{digest[:20]}"


class SettlementEngine:
    def __init__(
        self,
        *,
        store,
        connect: Callable[[], Any],
        config: SettlementConfig,
        gateways: dict[str, Any],
        dispatcher: NotificationDispatcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.connect = connect
        self.config = config
        self.gateways = gateways
        self.dispatcher = dispatcher
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -----------------------
    # plumbing
    # -----------------------
    def _atomic(self, op: str, work: Callable[[Any], Any], conn: Any = None) -> Any:
        if conn is not None:
            return work(conn)
        return run_atomic(
            work,
            connect=self.connect,
            max_attempts=self.config.max_attempts,
            base_backoff_ms=self.config.base_backoff_ms,
            sleep=self._sleep,
            op=op,
        )

    def _counted(self, op: str, call: Callable[[], SettlementResult]) -> SettlementResult:
        try:
            result = call()
        except Exception as exc:
            increment_settlement_outcome(op, str(getattr(exc, "code", None) or "error").lower())
            raise
        increment_settlement_outcome(op, result.outcome)
        return result

    def _run(self, op: str, work: Callable[[Any], SettlementResult], conn: Any = None) -> SettlementResult:
        return self._counted(op, lambda: self._atomic(op, work, conn))

    def dispatch(self, result: SettlementResult) -> int:
        if self.dispatcher is None or not result.notifications:
            return 0
        return self.dispatcher.dispatch(result.notifications)

    def _gateway(self, name: str):
        gw = self.gateways.get(name)
        if gw is None:
            raise ValidationError(f"Unknown gateway {name!r}", code="UNKNOWN_GATEWAY")
        return gw

    def _load_tx(self, conn, transaction_id: UUID) -> m.Transaction:
        tx = self.store.get_transaction(conn, transaction_id, for_update=True)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", code="TRANSACTION_NOT_FOUND")
        return tx

    def _load_order(self, conn, order_id: UUID) -> m.Order:
        order = self.store.get_order(conn, order_id, for_update=True)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        return order

    def _load_item(self, tx: m.Transaction, item_id: UUID) -> m.TransactionItem:
        item = tx.item(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not in transaction {tx.id}", code="ITEM_NOT_FOUND")
        return item

    def _locate(self, conn, reference: str, order_reference: Optional[str]) -> Optional[m.Transaction]:
        tx = self.store.get_transaction_by_reference(conn, reference, for_update=True)
        if tx is not None:
            return tx
        order_id = _order_id_from_reference(order_reference) or _order_id_from_reference(reference)
        if order_id is None:
            return None
        order = self.store.get_order(conn, order_id)
        if order is None or order.transaction_id is None:
            return None
        return self.store.get_transaction(conn, order.transaction_id, for_update=True)

    def _require_accounts(self, conn, user_ids) -> dict[UUID, m.Account]:
        wanted = set(user_ids)
        accounts = self.store.get_accounts(conn, wanted, for_update=True)
        missing = wanted - set(accounts)
        if missing:
            raise NotFoundError(
                "Accounts not found: " + ", ".join(sorted(str(u) for u in missing)),
                code="ACCOUNT_NOT_FOUND",
            )
        return accounts

    def _post(self, conn, entries: list[m.BalanceEntry]) -> None:
        if not entries:
            return
        assert_event_balanced(entries)
        self._require_accounts(conn, {e.user_id for e in entries})
        self.store.post_entries(conn, entries)

    # -----------------------
    # ledger entry builders
    # -----------------------
    def _settlement_entries(self, tx: m.Transaction, event_id: UUID) -> list[m.BalanceEntry]:
        platform = self.config.platform_account_id
        clearing = self.config.clearing_account_id

        def entry(user_id, amount, kind, item_id=None):
            return m.BalanceEntry(
                user_id=user_id,
                amount_cents=amount,
                kind=kind,
                event_id=event_id,
                method=tx.payment_method,
                order_id=tx.order_id,
                item_id=item_id,
                reference=tx.gateway_reference,
            )

        entries = [
            entry(clearing, -tx.total_amount_cents, "charge_clearing"),
            entry(platform, tx.total_amount_cents, "charge_received"),
        ]
        for item in tx.items:
            entries.append(entry(item.seller_id, item.seller_share_cents, "sale_credit", item.item_id))
            entries.append(entry(platform, -item.seller_share_cents, "seller_allocation", item.item_id))
        # platform nets commission + delivery - gateway fee; sellers never carry the fee
        if tx.gateway_fee_cents:
            entries.append(entry(platform, -tx.gateway_fee_cents, "gateway_fee"))
            entries.append(entry(clearing, tx.gateway_fee_cents, "gateway_fee_clearing"))
        return entries

    def _refund_entries(
        self, tx: m.Transaction, item: m.TransactionItem, event_id: UUID, *, method: str, status: str
    ) -> list[m.BalanceEntry]:
        common = dict(
            event_id=event_id,
            method=method,
            status=status,
            order_id=tx.order_id,
            item_id=item.item_id,
            reference=tx.gateway_reference,
        )
        return [
            m.BalanceEntry(user_id=item.seller_id, amount_cents=-item.seller_share_cents, kind="refund_debit", **common),
            m.BalanceEntry(
                user_id=self.config.platform_account_id,
                amount_cents=-item.platform_commission_cents,
                kind="commission_refund",
                **common,
            ),
            m.BalanceEntry(
                user_id=self.config.clearing_account_id,
                amount_cents=item.item_amount_cents,
                kind="refund_clearing",
                **common,
            ),
        ]

    # -----------------------
    # initiate
    # -----------------------
    def initiate(
        self,
        order_id: UUID,
        *,
        gateway: str,
        delivery_fee_cents: int,
        buyer_email: Optional[str] = None,
        phone: Optional[str] = None,
        conn: Any = None,
    ) -> SettlementResult:
        gw = self._gateway(gateway)
        normalized_phone = None
        if gateway == m.GATEWAY_PUSH:
            normalized_phone = self.config.normalize_phone(phone)
            if not normalized_phone:
                raise ValidationError("Invalid phone number for push payment", code="INVALID_PHONE")
        elif not (buyer_email or "").strip():
            raise ValidationError("Buyer email is required", code="MISSING_EMAIL")

        def prepare(c) -> tuple[m.Order, m.Transaction, list[ItemSplit]]:
            order = self._load_order(c, order_id)
            if order.status != m.ORDER_PENDING:
                raise BusinessRuleError(f"Order {order.id} is {order.status}", code="ORDER_NOT_PAYABLE")
            if order.transaction_id is not None or self.store.find_active_transaction(c, order.id) is not None:
                raise BusinessRuleError(
                    f"Order {order.id} already has an outstanding settlement", code="TRANSACTION_OUTSTANDING"
                )
            if gateway == m.GATEWAY_PUSH:
                whole_units(order.total_amount_cents)

            fee_rate = (
                self.config.split_gateway_fee_rate if gateway == m.GATEWAY_SPLIT else self.config.push_gateway_fee_rate
            )
            estimated_fee = estimate_gateway_fee(order.total_amount_cents, fee_rate)
            splits = compute_split(
                lines_from_order(order),
                total_amount_cents=order.total_amount_cents,
                delivery_fee_cents=delivery_fee_cents,
                gateway_fee_cents=estimated_fee,
                commission_rate=self.config.commission_rate,
                fee_bands=self.config.fee_bands,
                tolerance_cents=self.config.tolerance_cents,
            )

            tx = m.Transaction(
                id=uuid.uuid4(),
                order_id=order.id,
                buyer_id=order.customer_id,
                gateway=gateway,
                gateway_reference="",
                total_amount_cents=order.total_amount_cents,
                delivery_fee_cents=delivery_fee_cents,
                gateway_fee_cents=estimated_fee,
                net_received_cents=order.total_amount_cents - estimated_fee,
                items=[_tx_item(s) for s in splits],
                payment_method="M-Pesa" if gateway == m.GATEWAY_PUSH else None,
            )
            return order, tx, splits

        if gateway == m.GATEWAY_PUSH:
            return self._counted(
                "initiate", lambda: self._initiate_push(gw, prepare, normalized_phone or "", conn)
            )

        def work(c) -> SettlementResult:
            order, tx, splits = prepare(c)
            return self._initiate_split(c, gw, order, tx, splits, buyer_email or "")

        return self._run("initiate", work, conn)

    def _initiate_split(self, conn, gw, order, tx, splits, buyer_email) -> SettlementResult:
        sellers = self.store.get_accounts(conn, {s.seller_id for s in splits})
        shares = subaccount_split(
            splits,
            {sid: acc.subaccount_code for sid, acc in sellers.items() if acc.subaccount_code},
            self.config.commission_rate,
        )
        reference = f"ORD-{order.id.hex[:12]}-{tx.id.hex[:8]}"
        res = gw.initialize(
            reference=reference,
            amount_cents=tx.total_amount_cents,
            email=buyer_email,
            split=shares,
            metadata={"order_id": str(order.id), "transaction_id": str(tx.id)},
        )
        tx.gateway_reference = res.reference or reference
        self.store.insert_transaction(conn, tx)
        order.transaction_id = tx.id
        self.store.update_order(conn, order)

        logger.info("settlement_initiated gateway=split order_id=%s reference=%s", order.id, tx.gateway_reference)
        return SettlementResult(
            operation="initiate",
            outcome="initiated",
            transaction_id=tx.id,
            order_id=order.id,
            reference=tx.gateway_reference,
            status=tx.status,
            amount_cents=tx.total_amount_cents,
            redirect_url=res.authorization_url,
        )

    def _initiate_push(self, gw, prepare, phone: str, conn: Any = None) -> SettlementResult:
        """
        Three steps so the buyer's phone is prompted once: reserve the pending
        transaction and commit, push outside any unit of work, then record the
        acknowledgement (or release the reservation when the push is refused).
        """

        def reserve(c) -> m.Transaction:
            order, tx, _ = prepare(c)
            tx.gateway_reference = f"PENDING-{int(time.time() * 1000)}-{tx.id.hex[:8]}"
            self.store.insert_transaction(c, tx)
            order.transaction_id = tx.id
            self.store.update_order(c, order)
            return tx

        reserved = self._atomic("initiate", reserve, conn)

        try:
            res = gw.push(
                amount_cents=reserved.total_amount_cents,
                phone=phone,
                account_reference=f"ORDER-{reserved.order_id}",
                description=f"Payment for Order #{reserved.order_id}",
            )
        except Exception:
            logger.warning("push_initiation_rejected order_id=%s tx_id=%s", reserved.order_id, reserved.id)
            try:
                self._atomic("initiate", lambda c: self._release_reservation(c, reserved), conn)
            except Exception:
                logger.exception("push_reservation_release_failed order_id=%s tx_id=%s", reserved.order_id, reserved.id)
            raise

        def mark_initiated(c) -> m.Transaction:
            tx = self._load_tx(c, reserved.id)
            if tx.status != m.TX_PENDING:
                # the callback beat the acknowledgement
                return tx
            assert_transition("transaction", tx.status, m.TX_GATEWAY_INITIATED)
            tx.status = m.TX_GATEWAY_INITIATED
            tx.gateway_reference = res.reference or tx.gateway_reference
            self.store.update_transaction(c, tx)
            return tx

        tx = self._atomic("initiate", mark_initiated, conn)

        logger.info("settlement_initiated gateway=push order_id=%s reference=%s", tx.order_id, tx.gateway_reference)
        return SettlementResult(
            operation="initiate",
            outcome="push_sent",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=tx.status,
            amount_cents=tx.total_amount_cents,
            message="Payment request sent to phone",
        )

    def _release_reservation(self, conn, tx: m.Transaction) -> None:
        self.store.delete_transaction(conn, tx.id)
        order = self.store.get_order(conn, tx.order_id, for_update=True)
        if order is not None and order.transaction_id == tx.id:
            order.transaction_id = None
            self.store.update_order(conn, order)

    # -----------------------
    # webhook-driven state machine
    # -----------------------
    def handle_event(self, event, conn: Any = None) -> SettlementResult:
        if isinstance(event, SuccessEvent):
            return self._run("confirm", lambda c: self._confirm_success(c, event), conn)
        if isinstance(event, FailureEvent):
            return self._run("confirm", lambda c: self._confirm_failure(c, event), conn)
        if isinstance(event, ReversalEvent):
            return self._run("reversal", lambda c: self._reverse(c, event), conn)
        if isinstance(event, RefundProcessedEvent):
            return self._run("refund_processed", lambda c: self._refund_processed(c, event), conn)
        raise ValidationError(f"Unsupported event {type(event).__name__}", code="UNKNOWN_EVENT")

    def _not_found(self, op: str, reference: str, message: str) -> SettlementResult:
        logger.warning("settlement_event_not_found op=%s reference=%s detail=%s", op, reference, message)
        return SettlementResult(operation=op, outcome="not_found", reference=reference, message=message)

    def _duplicate(self, op: str, tx: m.Transaction, message: str) -> SettlementResult:
        logger.info("settlement_event_duplicate op=%s reference=%s status=%s", op, tx.gateway_reference, tx.status)
        return SettlementResult(
            operation=op,
            outcome="duplicate",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=tx.status,
            message=message,
        )

    def _confirm_success(self, conn, event: SuccessEvent) -> SettlementResult:
        tx = self._locate(conn, event.reference, event.order_reference)
        if tx is None:
            return self._not_found("confirm", event.reference, "transaction not found")

        if tx.status == m.TX_COMPLETED:
            return self._duplicate("confirm", tx, "already completed")
        if tx.status in (m.TX_FAILED, m.TX_REVERSED):
            logger.error(
                "late_success_for_closed_transaction reference=%s status=%s; needs manual reconciliation",
                tx.gateway_reference,
                tx.status,
            )
            return self._duplicate("confirm", tx, f"transaction already {tx.status}")

        order = self.store.get_order(conn, tx.order_id, for_update=True)
        if order is None:
            return self._not_found("confirm", event.reference, "order not found")

        if event.amount_cents is not None and abs(event.amount_cents - tx.total_amount_cents) > self.config.tolerance_cents:
            logger.warning(
                "confirm_amount_mismatch reference=%s reported=%s expected=%s",
                tx.gateway_reference,
                event.amount_cents,
                tx.total_amount_cents,
            )

        fee = event.gateway_fee_cents if event.gateway_fee_cents is not None else tx.gateway_fee_cents
        splits = compute_split(
            [SplitLine(i.item_id, i.seller_id, i.item_amount_cents) for i in tx.items],
            total_amount_cents=tx.total_amount_cents,
            delivery_fee_cents=tx.delivery_fee_cents,
            gateway_fee_cents=fee,
            commission_rate=self.config.commission_rate,
            fee_bands=self.config.fee_bands,
            tolerance_cents=self.config.tolerance_cents,
        )
        for item, split in zip(tx.items, splits):
            _apply_split(item, split)

        assert_transition("transaction", tx.status, m.TX_COMPLETED)
        tx.status = m.TX_COMPLETED
        tx.gateway_fee_cents = fee
        tx.net_received_cents = tx.total_amount_cents - fee
        tx.paid_at = event.paid_at or self._clock()
        tx.payment_method = event.payment_method or tx.payment_method
        self.store.update_transaction(conn, tx)

        if order.status == m.ORDER_PENDING:
            order.status = m.ORDER_PAID
            self.store.update_order(conn, order)
        elif order.status != m.ORDER_PAID:
            logger.warning("confirm_on_order_status order_id=%s status=%s", order.id, order.status)

        event_id = uuid.uuid4()
        self._post(conn, self._settlement_entries(tx, event_id))

        per_seller: "OrderedDict[UUID, list[m.TransactionItem]]" = OrderedDict()
        for item in tx.items:
            per_seller.setdefault(item.seller_id, []).append(item)
        for seller_id, items in per_seller.items():
            self.store.adjust_counters(
                conn,
                seller_id,
                sales=len(items),
                sales_cents=sum(i.seller_share_cents for i in items),
            )

        notes = [
            NotificationEvent(tx.buyer_id, "buyer", "payment_confirmed", tx.total_amount_cents, tx.order_id, reference=tx.gateway_reference),
        ]
        for seller_id, items in per_seller.items():
            notes.append(
                NotificationEvent(
                    seller_id,
                    "seller",
                    "sale_confirmed",
                    sum(i.seller_share_cents for i in items),
                    tx.order_id,
                    reference=tx.gateway_reference,
                )
            )
        platform_net = tx.delivery_fee_cents + sum(i.platform_commission_cents for i in tx.items) - fee
        notes.append(
            NotificationEvent(self.config.platform_account_id, "platform", "order_paid", platform_net, tx.order_id, reference=tx.gateway_reference)
        )

        logger.info(
            "settlement_confirmed reference=%s order_id=%s net_received_cents=%s gateway_fee_cents=%s",
            tx.gateway_reference,
            tx.order_id,
            tx.net_received_cents,
            fee,
        )
        return SettlementResult(
            operation="confirm",
            outcome="success",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=tx.status,
            amount_cents=tx.total_amount_cents,
            event_id=event_id,
            notifications=tuple(notes),
        )

    def _rollback_order(self, conn, tx: m.Transaction) -> None:
        order = self.store.get_order(conn, tx.order_id, for_update=True)
        if order is None:
            logger.warning("rollback_order_missing tx_id=%s order_id=%s", tx.id, tx.order_id)
            return
        if order.status == m.ORDER_PAID or order.transaction_id not in (tx.id, None):
            logger.info("rollback_skipped order_id=%s status=%s linked=%s", order.id, order.status, order.transaction_id)
            return

        for line in order.active_items():
            self.store.restore_inventory(conn, line.product_ref, line.quantity)
        self.store.adjust_counters(conn, order.customer_id, pending_orders=-1, orders=-1)
        for seller_id in order.seller_ids():
            self.store.adjust_counters(conn, seller_id, pending_orders=-1)

        order.status = m.ORDER_PENDING
        order.transaction_id = None
        self.store.update_order(conn, order)

    def _confirm_failure(self, conn, event: FailureEvent) -> SettlementResult:
        tx = self._locate(conn, event.reference, event.order_reference)
        if tx is None:
            return self._not_found("confirm", event.reference, "transaction not found")
        if tx.status in (m.TX_COMPLETED, m.TX_FAILED, m.TX_REVERSED):
            return self._duplicate("confirm", tx, f"already {tx.status}")

        self._rollback_order(conn, tx)

        assert_transition("transaction", tx.status, m.TX_FAILED)
        tx.status = m.TX_FAILED
        self.store.update_transaction(conn, tx)

        logger.info(
            "settlement_failed reference=%s order_id=%s result_code=%s reason=%s",
            tx.gateway_reference,
            tx.order_id,
            event.result_code,
            event.reason,
        )
        return SettlementResult(
            operation="confirm",
            outcome="failure",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=tx.status,
            amount_cents=tx.total_amount_cents,
            message=event.reason,
            notifications=(
                NotificationEvent(tx.buyer_id, "buyer", "payment_failed", tx.total_amount_cents, tx.order_id, reference=tx.gateway_reference),
                NotificationEvent(self.config.platform_account_id, "platform", "payment_failed", tx.total_amount_cents, tx.order_id, reference=tx.gateway_reference),
            ),
        )

    def _reverse(self, conn, event: ReversalEvent) -> SettlementResult:
        tx = self._locate(conn, event.reference, event.order_reference)
        if tx is None:
            return self._not_found("reversal", event.reference, "transaction not found")
        if tx.is_reversed or tx.status in (m.TX_REVERSED, m.TX_FAILED):
            return self._duplicate("reversal", tx, "already reversed")

        if tx.status != m.TX_COMPLETED:
            # nothing was credited yet
            self._rollback_order(conn, tx)
            assert_transition("transaction", tx.status, m.TX_REVERSED)
            tx.status = m.TX_REVERSED
            self.store.update_transaction(conn, tx)
            return SettlementResult(
                operation="reversal",
                outcome="reversal",
                transaction_id=tx.id,
                order_id=tx.order_id,
                reference=tx.gateway_reference,
                status=tx.status,
            )

        order = self.store.get_order(conn, tx.order_id, for_update=True)
        return self._apply_reversal(conn, tx, order, reason=event.reason)

    def _apply_reversal(self, conn, tx: m.Transaction, order: Optional[m.Order], *, reason: Optional[str] = None) -> SettlementResult:
        event_id = uuid.uuid4()
        method = "gateway"
        entries: list[m.BalanceEntry] = []
        refunded = 0

        for item in tx.items:
            if item.refund_status == m.REFUND_NONE:
                if item.payout_status == m.PAYOUT_TRANSFERRED:
                    logger.warning("reversal_after_payout tx_id=%s item_id=%s seller_id=%s", tx.id, item.item_id, item.seller_id)
                entries.extend(self._refund_entries(tx, item, event_id, method=method, status="completed"))
                assert_transition("refund", item.refund_status, m.REFUND_PENDING)
                item.refund_status = m.REFUND_PENDING
                item.refunded_amount_cents = item.item_amount_cents
                refunded += item.item_amount_cents
            if item.refund_status == m.REFUND_PENDING:
                assert_transition("refund", item.refund_status, m.REFUND_COMPLETED)
                item.refund_status = m.REFUND_COMPLETED

        if tx.delivery_fee_cents:
            common = dict(event_id=event_id, method=method, order_id=tx.order_id, reference=tx.gateway_reference)
            entries.append(m.BalanceEntry(user_id=self.config.platform_account_id, amount_cents=-tx.delivery_fee_cents, kind="delivery_fee_refund", **common))
            entries.append(m.BalanceEntry(user_id=self.config.clearing_account_id, amount_cents=tx.delivery_fee_cents, kind="refund_clearing", **common))
            refunded += tx.delivery_fee_cents

        tx.is_reversed = True
        self.store.update_transaction(conn, tx)
        self._post(conn, entries)

        if order is not None and order.status != m.ORDER_CANCELLED:
            order.status = m.ORDER_CANCELLED
            self.store.update_order(conn, order)

        notes = [NotificationEvent(tx.buyer_id, "buyer", "transaction_reversed", tx.total_amount_cents, tx.order_id, reference=tx.gateway_reference)]
        for seller_id in OrderedDict((i.seller_id, None) for i in tx.items):
            notes.append(NotificationEvent(seller_id, "seller", "transaction_reversed", 0, tx.order_id, reference=tx.gateway_reference))
        notes.append(NotificationEvent(self.config.platform_account_id, "platform", "transaction_reversed", refunded, tx.order_id, reference=tx.gateway_reference))

        logger.info("settlement_reversed reference=%s order_id=%s refunded_cents=%s reason=%s", tx.gateway_reference, tx.order_id, refunded, reason)
        return SettlementResult(
            operation="reversal",
            outcome="reversal",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=tx.status,
            amount_cents=refunded,
            event_id=event_id,
            item_ids=tuple(i.item_id for i in tx.items),
            notifications=tuple(notes),
        )

    def _refund_processed(self, conn, event: RefundProcessedEvent) -> SettlementResult:
        tx = self._locate(conn, event.reference, event.order_reference)
        if tx is None:
            return self._not_found("refund_processed", event.reference, "transaction not found")
        item = tx.item(event.item_id)
        if item is None:
            return self._not_found("refund_processed", event.reference, f"item {event.item_id} not found")
        if item.refund_status in (m.REFUND_COMPLETED, m.REFUND_RETURNED):
            return self._duplicate("refund_processed", tx, f"refund already {item.refund_status}")

        event_id = None
        if item.refund_status == m.REFUND_NONE:
            # refund raised on the gateway side without a local request
            event_id = uuid.uuid4()
            self._post(conn, self._refund_entries(tx, item, event_id, method="gateway", status="completed"))
            assert_transition("refund", item.refund_status, m.REFUND_PENDING)
            item.refund_status = m.REFUND_PENDING
            item.refunded_amount_cents = item.item_amount_cents

        assert_transition("refund", item.refund_status, m.REFUND_COMPLETED)
        item.refund_status = m.REFUND_COMPLETED
        if event.amount_cents is not None:
            item.refunded_amount_cents = min(event.amount_cents, item.item_amount_cents)
        self.store.update_transaction(conn, tx)

        return SettlementResult(
            operation="refund_processed",
            outcome="refund_completed",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=item.refund_status,
            amount_cents=item.refunded_amount_cents,
            event_id=event_id,
            item_ids=(item.item_id,),
            notifications=(
                NotificationEvent(tx.buyer_id, "buyer", "refund_completed", item.refunded_amount_cents, tx.order_id, item.item_id, tx.gateway_reference),
            ),
        )

    # -----------------------
    # verify (poll)
    # -----------------------
    def verify(self, reference: str) -> SettlementResult:
        def lookup(c) -> m.Transaction:
            tx = self.store.get_transaction_by_reference(c, reference)
            if tx is None:
                raise NotFoundError(f"Transaction {reference} not found", code="TRANSACTION_NOT_FOUND")
            return tx

        tx = run_atomic(lookup, connect=self.connect, max_attempts=self.config.max_attempts,
                        base_backoff_ms=self.config.base_backoff_ms, sleep=self._sleep, op="verify")

        def status_only(outcome: str) -> SettlementResult:
            return SettlementResult(
                operation="verify",
                outcome=outcome,
                transaction_id=tx.id,
                order_id=tx.order_id,
                reference=tx.gateway_reference,
                status=tx.status,
                amount_cents=tx.total_amount_cents,
            )

        if tx.gateway != m.GATEWAY_SPLIT or tx.status in (m.TX_COMPLETED, m.TX_FAILED, m.TX_REVERSED):
            return status_only("status")

        res = self._gateway(m.GATEWAY_SPLIT).verify(reference)
        if res.status == "success":
            return self.handle_event(
                SuccessEvent(
                    reference=reference,
                    gateway_fee_cents=res.fee_cents,
                    amount_cents=res.amount_cents,
                    paid_at=res.paid_at,
                    payment_method=res.channel,
                )
            )
        if res.status == "failed":
            return self.handle_event(FailureEvent(reference=reference, reason=res.error or "verify reported failure"))
        if res.status == "reversed":
            return self.handle_event(ReversalEvent(reference=reference))
        return status_only("pending")

    # -----------------------
    # refunds
    # -----------------------
    def refund_item(self, transaction_id: UUID, item_id: UUID, conn: Any = None) -> SettlementResult:
        def work(c) -> SettlementResult:
            tx = self._load_tx(c, transaction_id)
            item = self._load_item(tx, item_id)
            if item.refund_status != m.REFUND_NONE:
                return SettlementResult(
                    operation="refund",
                    outcome="noop",
                    transaction_id=tx.id,
                    order_id=tx.order_id,
                    reference=tx.gateway_reference,
                    status=item.refund_status,
                    amount_cents=item.refunded_amount_cents,
                    item_ids=(item.item_id,),
                    message=f"Refund already {item.refund_status}",
                )
            order = self._load_order(c, tx.order_id)
            return self._refund(c, tx, order, item)

        return self._run("refund", work, conn)

    def _refund(self, conn, tx: m.Transaction, order: m.Order, item: m.TransactionItem) -> SettlementResult:
        if tx.status != m.TX_COMPLETED or tx.is_reversed:
            raise BusinessRuleError(f"Transaction {tx.id} is not refundable ({tx.status})", code="TRANSACTION_NOT_REFUNDABLE")
        if item.payout_status == m.PAYOUT_TRANSFERRED:
            raise BusinessRuleError(f"Item {item.item_id} was already paid out", code="ITEM_ALREADY_PAID_OUT")

        amount = item.item_amount_cents
        if tx.refunded_total_cents + amount > tx.total_amount_cents:
            raise BusinessRuleError("Refund exceeds transaction total", code="REFUND_EXCEEDS_TOTAL")

        if tx.gateway == m.GATEWAY_SPLIT:
            gw = self._gateway(m.GATEWAY_SPLIT)
            state = gw.verify(tx.gateway_reference)
            if state.status == "reversed":
                return self._apply_reversal(conn, tx, order, reason="reversed at gateway")
            if state.status != "success":
                raise BusinessRuleError(
                    f"Gateway reports {state.status} for {tx.gateway_reference}", code="TRANSACTION_NOT_REFUNDABLE"
                )
            gw.refund(
                reference=tx.gateway_reference,
                amount_cents=amount,
                metadata={"item_id": str(item.item_id), "transaction_id": str(tx.id)},
            )
            method, message = "gateway", "Refund submitted to gateway"
        else:
            method, message = "manual", "Refund recorded; to be completed out of band"

        event_id = uuid.uuid4()
        assert_transition("refund", item.refund_status, m.REFUND_PENDING)
        item.refund_status = m.REFUND_PENDING
        item.refunded_amount_cents = amount
        self._post(conn, self._refund_entries(tx, item, event_id, method=method, status="pending"))
        self.store.update_transaction(conn, tx)

        logger.info("refund_initiated tx_id=%s item_id=%s method=%s amount_cents=%s", tx.id, item.item_id, method, amount)
        return SettlementResult(
            operation="refund",
            outcome="refund_pending",
            transaction_id=tx.id,
            order_id=tx.order_id,
            reference=tx.gateway_reference,
            status=item.refund_status,
            amount_cents=amount,
            event_id=event_id,
            item_ids=(item.item_id,),
            message=message,
            notifications=(
                NotificationEvent(tx.buyer_id, "buyer", "refund_initiated", amount, tx.order_id, item.item_id, tx.gateway_reference),
                NotificationEvent(item.seller_id, "seller", "refund_debited", item.seller_share_cents, tx.order_id, item.item_id, tx.gateway_reference),
                NotificationEvent(self.config.platform_account_id, "platform", "refund_debited", item.platform_commission_cents, tx.order_id, item.item_id, tx.gateway_reference),
            ),
        )

    def complete_refund(self, transaction_id: UUID, item_id: UUID, conn: Any = None) -> SettlementResult:
        """Operator confirmation that an out-of-band refund reached the buyer."""

        def work(c) -> SettlementResult:
            tx = self._load_tx(c, transaction_id)
            item = self._load_item(tx, item_id)
            if item.refund_status == m.REFUND_NONE:
                raise BusinessRuleError(f"No refund requested for item {item_id}", code="REFUND_NOT_REQUESTED")
            if item.refund_status != m.REFUND_PENDING:
                return SettlementResult(
                    operation="refund_complete",
                    outcome="noop",
                    transaction_id=tx.id,
                    status=item.refund_status,
                    item_ids=(item.item_id,),
                )
            assert_transition("refund", item.refund_status, m.REFUND_COMPLETED)
            item.refund_status = m.REFUND_COMPLETED
            self.store.update_transaction(c, tx)
            return SettlementResult(
                operation="refund_complete",
                outcome="refund_completed",
                transaction_id=tx.id,
                order_id=tx.order_id,
                status=item.refund_status,
                amount_cents=item.refunded_amount_cents,
                item_ids=(item.item_id,),
                notifications=(
                    NotificationEvent(tx.buyer_id, "buyer", "refund_completed", item.refunded_amount_cents, tx.order_id, item.item_id, tx.gateway_reference),
                ),
            )

        return self._run("refund_complete", work, conn)

    # -----------------------
    # returns
    # -----------------------
    def request_return(self, transaction_id: UUID, item_id: UUID, conn: Any = None) -> SettlementResult:
        def work(c) -> SettlementResult:
            tx = self._load_tx(c, transaction_id)
            item = self._load_item(tx, item_id)
            if item.return_status != m.RETURN_NONE:
                return SettlementResult(operation="return", outcome="noop", transaction_id=tx.id, status=item.return_status, item_ids=(item.item_id,))
            if tx.status != m.TX_COMPLETED or tx.is_reversed:
                raise BusinessRuleError(f"Transaction {tx.id} is not settled", code="TRANSACTION_NOT_SETTLED")
            order = self._load_order(c, tx.order_id)
            line = order.line(item.item_id)
            if line is None or line.status != m.LINE_DELIVERED:
                raise BusinessRuleError("Only delivered items can be returned", code="ITEM_NOT_DELIVERED")
            if item.payout_status == m.PAYOUT_TRANSFERRED or item.refund_status != m.REFUND_NONE:
                raise BusinessRuleError(f"Item {item.item_id} can no longer be returned", code="RETURN_NOT_ALLOWED")

            assert_transition("return", item.return_status, m.RETURN_PENDING)
            item.return_status = m.RETURN_PENDING
            self.store.update_transaction(c, tx)
            return SettlementResult(
                operation="return",
                outcome="return_requested",
                transaction_id=tx.id,
                order_id=tx.order_id,
                status=item.return_status,
                item_ids=(item.item_id,),
                notifications=(
                    NotificationEvent(item.seller_id, "seller", "return_requested", item.item_amount_cents, tx.order_id, item.item_id),
                ),
            )

        return self._run("return", work, conn)

    def resolve_return(self, transaction_id: UUID, item_id: UUID, *, approve: bool, conn: Any = None) -> SettlementResult:
        def work(c) -> SettlementResult:
            tx = self._load_tx(c, transaction_id)
            item = self._load_item(tx, item_id)
            if item.return_status == m.RETURN_NONE:
                raise BusinessRuleError(f"No return requested for item {item_id}", code="RETURN_NOT_REQUESTED")
            if item.return_status != m.RETURN_PENDING:
                return SettlementResult(operation="return_resolve", outcome="noop", transaction_id=tx.id, status=item.return_status, item_ids=(item.item_id,))

            if not approve:
                assert_transition("return", item.return_status, m.RETURN_REJECTED)
                item.return_status = m.RETURN_REJECTED
                self.store.update_transaction(c, tx)
                return SettlementResult(
                    operation="return_resolve",
                    outcome="return_rejected",
                    transaction_id=tx.id,
                    order_id=tx.order_id,
                    status=item.return_status,
                    item_ids=(item.item_id,),
                    notifications=(
                        NotificationEvent(tx.buyer_id, "buyer", "return_rejected", 0, tx.order_id, item.item_id),
                    ),
                )

            assert_transition("return", item.return_status, m.RETURN_CONFIRMED)
            item.return_status = m.RETURN_CONFIRMED
            notes: tuple[NotificationEvent, ...] = ()
            event_id = None
            if item.refund_status == m.REFUND_NONE:
                order = self._load_order(c, tx.order_id)
                refunded = self._refund(c, tx, order, item)
                notes, event_id = refunded.notifications, refunded.event_id
            if item.refund_status == m.REFUND_PENDING:
                assert_transition("refund", item.refund_status, m.REFUND_RETURNED)
                item.refund_status = m.REFUND_RETURNED
            self.store.update_transaction(c, tx)

            return SettlementResult(
                operation="return_resolve",
                outcome="return_confirmed",
                transaction_id=tx.id,
                order_id=tx.order_id,
                status=item.refund_status,
                amount_cents=item.refunded_amount_cents,
                event_id=event_id,
                item_ids=(item.item_id,),
                notifications=notes,
            )

        return self._run("return_resolve", work, conn)

    # -----------------------
    # payouts
    # -----------------------
    def payout(self, transaction_id: UUID, item_id: UUID, conn: Any = None) -> SettlementResult:
        def work(c) -> SettlementResult:
            tx = self._load_tx(c, transaction_id)
            item = self._load_item(tx, item_id)
            if item.payout_status not in m.PAYOUT_PRE_TRANSFER:
                return SettlementResult(
                    operation="payout",
                    outcome="noop",
                    transaction_id=tx.id,
                    status=item.payout_status,
                    reference=item.payout_reference,
                    item_ids=(item.item_id,),
                )
            if tx.status != m.TX_COMPLETED or tx.is_reversed:
                raise BusinessRuleError(f"Transaction {tx.id} is not settled", code="TRANSACTION_NOT_SETTLED")

            order = self._load_order(c, tx.order_id)
            seller_id = item.seller_id
            batch = [i for i in tx.items if i.seller_id == seller_id and self._payout_eligible(order, i)]
            owed = sum(i.owed_amount_cents for i in batch)
            debit = sum(i.seller_share_cents for i in batch)
            if not batch or owed <= 0:
                raise BusinessRuleError("No delivered items with a positive payout", code="PAYOUT_NOT_ELIGIBLE")

            seller = self._require_accounts(c, {seller_id, self.config.clearing_account_id})[seller_id]
            if seller.balance_cents < debit:
                raise InsufficientBalance(f"Seller balance {seller.balance_cents} does not cover payout {debit}")

            item_ids = [i.item_id for i in batch]
            if tx.gateway == m.GATEWAY_SPLIT:
                reference, method = payout_reference(tx.id, seller_id, item_ids), "Bank"
            else:
                reference, method = manual_reference(seller_id), "M-Pesa"
            res = self._gateway(tx.gateway).transfer(
                reference=reference,
                amount_cents=owed,
                recipient=seller.recipient_code,
                reason=f"Payout for order {tx.order_id}",
            )
            reference = res.reference or reference

            event_id = uuid.uuid4()
            entries: list[m.BalanceEntry] = []
            for i in batch:
                assert_transition("payout", i.payout_status, m.PAYOUT_TRANSFERRED)
                i.payout_status = m.PAYOUT_TRANSFERRED
                i.payout_reference = reference
                common = dict(event_id=event_id, method=method, order_id=tx.order_id, item_id=i.item_id, reference=reference)
                fee_charged = i.seller_share_cents - i.owed_amount_cents
                entries.append(m.BalanceEntry(user_id=seller_id, amount_cents=-i.owed_amount_cents, kind="payout", **common))
                entries.append(m.BalanceEntry(user_id=self.config.clearing_account_id, amount_cents=i.owed_amount_cents, kind="payout_clearing", **common))
                if fee_charged:
                    entries.append(m.BalanceEntry(user_id=seller_id, amount_cents=-fee_charged, kind="transfer_fee", **common))
                    entries.append(m.BalanceEntry(user_id=self.config.clearing_account_id, amount_cents=fee_charged, kind="transfer_fee_clearing", **common))

            self._post(c, entries)
            self.store.update_transaction(c, tx)

            logger.info(
                "payout_transferred tx_id=%s seller_id=%s items=%s owed_cents=%s reference=%s",
                tx.id,
                seller_id,
                len(batch),
                owed,
                reference,
            )
            return SettlementResult(
                operation="payout",
                outcome="transferred",
                transaction_id=tx.id,
                order_id=tx.order_id,
                reference=reference,
                status=m.PAYOUT_TRANSFERRED,
                amount_cents=owed,
                event_id=event_id,
                item_ids=tuple(item_ids),
                notifications=(
                    NotificationEvent(seller_id, "seller", "payout_processed", owed, tx.order_id, reference=reference),
                    NotificationEvent(self.config.platform_account_id, "platform", "payout_processed", owed, tx.order_id, reference=reference),
                ),
            )

        return self._run("payout", work, conn)

    @staticmethod
    def _payout_eligible(order: m.Order, item: m.TransactionItem) -> bool:
        if item.payout_status not in m.PAYOUT_PRE_TRANSFER:
            return False
        if item.refund_status != m.REFUND_NONE or item.return_status in (m.RETURN_PENDING, m.RETURN_CONFIRMED):
            return False
        line = order.line(item.item_id)
        return line is not None and not line.cancelled and line.status == m.LINE_DELIVERED
