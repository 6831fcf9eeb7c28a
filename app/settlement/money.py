# app/settlement/money.py
"""
Pure settlement arithmetic. Everything is integer minor units; rates are Decimal.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Sequence
from uuid import UUID

from app.settlement.errors import AmountMismatch, ValidationError


@dataclass(frozen=True)
class FeeBand:
    ceiling_cents: Optional[int]  # None => open top band
    fee_cents: int


DEFAULT_FEE_BANDS: tuple[FeeBand, ...] = (
    FeeBand(150_000, 2_000),
    FeeBand(2_000_000, 4_000),
    FeeBand(None, 6_000),
)


@dataclass(frozen=True)
class SplitLine:
    item_id: UUID
    seller_id: UUID
    unit_price_cents: int
    quantity: int = 1
    cancelled: bool = False


@dataclass(frozen=True)
class ItemSplit:
    item_id: UUID
    seller_id: UUID
    item_amount_cents: int
    platform_commission_cents: int
    seller_share_cents: int
    gateway_fee_cents: int
    transfer_fee_cents: int
    net_commission_cents: int
    owed_amount_cents: int


def parse_fee_bands(raw: str) -> tuple[FeeBand, ...]:
    """
    "150000:2000,2000000:4000,*:6000" -> bands sorted by ceiling, open band last.
    """
    bands: list[FeeBand] = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        ceiling_s, _, fee_s = chunk.partition(":")
        if not fee_s:
            raise ValueError(f"Invalid fee band {chunk!r}")
        ceiling = None if ceiling_s.strip() == "*" else int(ceiling_s)
        bands.append(FeeBand(ceiling, int(fee_s)))
    if not bands:
        return DEFAULT_FEE_BANDS
    closed = sorted((b for b in bands if b.ceiling_cents is not None), key=lambda b: b.ceiling_cents)
    open_top = [b for b in bands if b.ceiling_cents is None]
    return tuple(closed + open_top[:1])


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def transfer_fee_for(seller_share_cents: int, bands: Sequence[FeeBand] = DEFAULT_FEE_BANDS) -> int:
    for band in bands:
        if band.ceiling_cents is None or seller_share_cents <= band.ceiling_cents:
            return band.fee_cents
    return bands[-1].fee_cents if bands else 0


def estimate_gateway_fee(total_amount_cents: int, rate: Decimal) -> int:
    return round_half_up(Decimal(int(total_amount_cents)) * rate)


def prorate(amount_cents: int, weights: Sequence[int]) -> list[int]:
    """
    Split amount_cents across weights with the largest-remainder method, so the
    parts always sum to amount_cents exactly.
    """
    total_weight = sum(weights)
    if not weights:
        return []
    if total_weight <= 0:
        return [0 for _ in weights]

    floors: list[int] = []
    remainders: list[tuple[int, int]] = []
    for idx, w in enumerate(weights):
        q, r = divmod(amount_cents * w, total_weight)
        floors.append(q)
        remainders.append((r, idx))

    leftover = amount_cents - sum(floors)
    for _, idx in sorted(remainders, key=lambda t: (-t[0], t[1]))[:leftover]:
        floors[idx] += 1
    return floors


def compute_split(
    lines: Iterable[SplitLine],
    *,
    total_amount_cents: int,
    delivery_fee_cents: int,
    gateway_fee_cents: int,
    commission_rate: Decimal,
    fee_bands: Sequence[FeeBand] = DEFAULT_FEE_BANDS,
    tolerance_cents: int = 1,
) -> list[ItemSplit]:
    active = [ln for ln in lines if not ln.cancelled]
    if not active:
        raise ValidationError("Order has no payable items", code="NO_PAYABLE_ITEMS")
    if delivery_fee_cents < 0 or gateway_fee_cents < 0 or total_amount_cents <= 0:
        raise ValidationError("Amounts must be positive", code="INVALID_AMOUNT")
    if commission_rate < 0 or commission_rate >= 1:
        raise ValidationError(f"Commission rate out of range: {commission_rate}", code="INVALID_RATE")

    amounts: list[int] = []
    for ln in active:
        if ln.quantity <= 0 or ln.unit_price_cents < 0:
            raise ValidationError(f"Invalid line {ln.item_id}", code="INVALID_LINE")
        amounts.append(int(ln.unit_price_cents) * int(ln.quantity))

    items_total = sum(amounts)
    drift = abs(items_total + delivery_fee_cents - total_amount_cents)
    if drift > tolerance_cents:
        raise AmountMismatch(
            f"items {items_total} + delivery {delivery_fee_cents} != total {total_amount_cents}"
        )

    fee_parts = prorate(gateway_fee_cents, amounts)

    out: list[ItemSplit] = []
    for ln, amount, fee_part in zip(active, amounts, fee_parts):
        commission = round_half_up(Decimal(amount) * commission_rate)
        share = amount - commission
        transfer_fee = transfer_fee_for(share, fee_bands)
        out.append(
            ItemSplit(
                item_id=ln.item_id,
                seller_id=ln.seller_id,
                item_amount_cents=amount,
                platform_commission_cents=commission,
                seller_share_cents=share,
                gateway_fee_cents=fee_part,
                transfer_fee_cents=transfer_fee,
                net_commission_cents=max(commission - fee_part, 0),
                owed_amount_cents=max(share - transfer_fee, 0),
            )
        )
    return out


def subaccount_split(
    splits: Sequence[ItemSplit],
    subaccounts: Mapping[UUID, str],
    commission_rate: Decimal,
) -> list[tuple[str, Decimal]]:
    """
    Per-subaccount percentage of the charge, two decimal places, rounded down so
    the list never sums past 100.
    """
    items_total = sum(s.item_amount_cents for s in splits)
    if items_total <= 0:
        raise ValidationError("Nothing to split", code="EMPTY_SPLIT")

    per_account: dict[str, Decimal] = {}
    for s in splits:
        code = subaccounts.get(s.seller_id)
        if not code:
            raise ValidationError(f"Seller {s.seller_id} has no payout subaccount", code="MISSING_SUBACCOUNT")
        pct = Decimal(s.item_amount_cents) / Decimal(items_total) * (Decimal(1) - commission_rate) * 100
        per_account[code] = per_account.get(code, Decimal(0)) + pct

    shares = [(code, pct.quantize(Decimal("0.01"), rounding=ROUND_DOWN)) for code, pct in per_account.items()]
    if not shares:
        raise ValidationError("Nothing to split", code="EMPTY_SPLIT")
    if sum(p for _, p in shares) > 100:
        raise ValidationError("Split exceeds 100%", code="SPLIT_EXCEEDS_100")
    return shares
