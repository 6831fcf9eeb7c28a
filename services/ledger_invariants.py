from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable
from uuid import UUID

from app.settlement.errors import SettlementError
from app.settlement.model import BalanceEntry


class LedgerImbalance(SettlementError):
    code = "LEDGER_IMBALANCE"


def event_totals(entries: Iterable[BalanceEntry]) -> dict[UUID, int]:
    totals: dict[UUID, int] = defaultdict(int)
    for e in entries:
        totals[e.event_id] += int(e.amount_cents)
    return dict(totals)


def assert_event_balanced(entries: list[BalanceEntry]) -> None:
    """
    Invariant: the entries of one settlement event net to zero across all parties.
    """
    for event_id, total in event_totals(entries).items():
        if total != 0:
            raise LedgerImbalance(f"event {event_id} nets to {total} cents")


def _check_account(account, entries: list[BalanceEntry]) -> dict[str, Any]:
    ledger_cents = sum(int(e.amount_cents) for e in entries)
    diff_cents = int(account.balance_cents) - int(ledger_cents)
    return {
        "account_id": str(account.id),
        "balance_cents": int(account.balance_cents),
        "ledger_cents": int(ledger_cents),
        "diff_cents": int(diff_cents),
        "ok": diff_cents == 0,
    }


def check_ledger_integrity(store, conn) -> dict[str, Any]:
    """
    Compare every running balance with the sum of its history, and check that
    every recorded event nets to zero.
    """
    entries = store.list_entries(conn)
    by_user: dict[UUID, list[BalanceEntry]] = defaultdict(list)
    for e in entries:
        by_user[e.user_id].append(e)

    accounts = [_check_account(a, by_user.get(a.id, [])) for a in store.list_accounts(conn)]
    unbalanced = [
        {"event_id": str(event_id), "total_cents": total}
        for event_id, total in sorted(event_totals(entries).items(), key=lambda kv: str(kv[0]))
        if total != 0
    ]

    bad_accounts = [a for a in accounts if not a["ok"]]
    return {
        "ok": not bad_accounts and not unbalanced,
        "accounts_checked": len(accounts),
        "events_checked": len(event_totals(entries)),
        "account_mismatches": bad_accounts,
        "unbalanced_events": unbalanced,
    }
