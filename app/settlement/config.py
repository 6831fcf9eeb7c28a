# app/settlement/config.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from app.settlement.money import DEFAULT_FEE_BANDS, FeeBand, parse_fee_bands


@dataclass(frozen=True)
class SettlementConfig:
    platform_account_id: UUID
    clearing_account_id: UUID
    commission_rate: Decimal = Decimal("0.05")
    split_gateway_fee_rate: Decimal = Decimal("0.015")
    push_gateway_fee_rate: Decimal = Decimal("0.02")
    tolerance_cents: int = 1
    fee_bands: tuple[FeeBand, ...] = field(default=DEFAULT_FEE_BANDS)
    max_attempts: int = 5
    base_backoff_ms: int = 100
    push_phone_pattern: str = r"^254[17]\d{8}$"

    @classmethod
    def from_settings(cls, s) -> "SettlementConfig":
        return cls(
            platform_account_id=s.PLATFORM_ACCOUNT_ID,
            clearing_account_id=s.CLEARING_ACCOUNT_ID,
            commission_rate=Decimal(str(s.COMMISSION_RATE)),
            split_gateway_fee_rate=Decimal(str(s.SPLIT_GATEWAY_FEE_RATE)),
            push_gateway_fee_rate=Decimal(str(s.PUSH_GATEWAY_FEE_RATE)),
            tolerance_cents=int(s.AMOUNT_TOLERANCE_CENTS),
            fee_bands=parse_fee_bands(s.TRANSFER_FEE_BANDS),
            max_attempts=int(s.SETTLEMENT_MAX_ATTEMPTS),
            base_backoff_ms=int(s.SETTLEMENT_BASE_BACKOFF_MS),
            push_phone_pattern=s.PUSH_PHONE_REGEX,
        )

    def normalize_phone(self, raw: str | None) -> str | None:
        """
        "+254 712-345678" / "0712345678" -> "254712345678"; None when the result
        does not match the push gateway's local-number pattern.
        """
        digits = re.sub(r"[\s\-()]", "", raw or "")
        if digits.startswith("+"):
            digits = digits[1:]
        if digits.startswith("0") and len(digits) == 10:
            digits = "254" + digits[1:]
        if not re.fullmatch(self.push_phone_pattern, digits):
            return None
        return digits
