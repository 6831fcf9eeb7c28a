from __future__ import annotations

from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = Field(default="")

    # -----------------------
    # Ledger owners
    # -----------------------
    PLATFORM_ACCOUNT_ID: UUID = Field(default=UUID("00000000-0000-0000-0000-000000000001"))
    CLEARING_ACCOUNT_ID: UUID = Field(default=UUID("00000000-0000-0000-0000-000000000002"))

    # -----------------------
    # Money
    # -----------------------
    COMMISSION_RATE: Decimal = Decimal("0.05")
    SPLIT_GATEWAY_FEE_RATE: Decimal = Decimal("0.015")
    PUSH_GATEWAY_FEE_RATE: Decimal = Decimal("0.02")
    AMOUNT_TOLERANCE_CENTS: int = 1
    # "<ceiling_cents>:<fee_cents>" bands, "*" is the open top band
    TRANSFER_FEE_BANDS: str = "150000:2000,2000000:4000,*:6000"

    # -----------------------
    # Atomic unit / retry
    # -----------------------
    SETTLEMENT_MAX_ATTEMPTS: int = 5
    SETTLEMENT_BASE_BACKOFF_MS: int = 100
    SETTLEMENT_STATEMENT_TIMEOUT_MS: int = 5000
    SETTLEMENT_LOCK_TIMEOUT_MS: int = 3000

    # -----------------------
    # Gateways
    # -----------------------
    GATEWAY_MODE: Literal["mock", "real"] = "mock"
    GATEWAY_HTTP_TIMEOUT_S: float = 20.0
    GATEWAY_HTTP_ATTEMPTS: int = 3
    GATEWAY_HTTP_BACKOFF_S: float = 1.0

    SPLIT_GATEWAY_BASE_URL: str = "https://api.paystack.co"
    SPLIT_GATEWAY_SECRET_KEY: str = ""
    SPLIT_GATEWAY_CALLBACK_URL: str = ""

    PUSH_GATEWAY_BASE_URL: str = "https://swiftwallet.co.ke/pay-app-v2"
    PUSH_GATEWAY_API_KEY: str = ""
    PUSH_GATEWAY_CHANNEL_ID: str = ""
    PUSH_GATEWAY_CALLBACK_URL: str = ""
    PUSH_WEBHOOK_SECRET: str = ""
    PUSH_PHONE_REGEX: str = r"^254[17]\d{8}$"

    # -----------------------
    # Notifications
    # -----------------------
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_HTTP_TIMEOUT_S: float = 5.0


def validate_env_settings(s: Settings) -> list[str]:
    """
    Returns a list of human-readable configuration problems (empty when ok).
    """
    problems: list[str] = []

    if not (s.DATABASE_URL or "").strip():
        problems.append("DATABASE_URL is not set")

    for name in ("COMMISSION_RATE", "SPLIT_GATEWAY_FEE_RATE", "PUSH_GATEWAY_FEE_RATE"):
        value = getattr(s, name)
        if value < 0 or value >= 1:
            problems.append(f"{name} must be in [0, 1), got {value}")

    if s.SETTLEMENT_MAX_ATTEMPTS < 1:
        problems.append("SETTLEMENT_MAX_ATTEMPTS must be >= 1")

    if s.GATEWAY_MODE == "real":
        if not s.SPLIT_GATEWAY_SECRET_KEY:
            problems.append("SPLIT_GATEWAY_SECRET_KEY is required when GATEWAY_MODE=real")
        if not s.PUSH_GATEWAY_API_KEY:
            problems.append("PUSH_GATEWAY_API_KEY is required when GATEWAY_MODE=real")
        if not s.PUSH_WEBHOOK_SECRET:
            problems.append("PUSH_WEBHOOK_SECRET is required when GATEWAY_MODE=real")

    if s.PLATFORM_ACCOUNT_ID == s.CLEARING_ACCOUNT_ID:
        problems.append("PLATFORM_ACCOUNT_ID and CLEARING_ACCOUNT_ID must differ")

    return problems


settings = Settings()
