# app/providers/split_gateway.py
from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Optional, Sequence

from app.providers.base import GatewayResult
from app.providers.http import HttpClient, HttpResponse, is_retryable_http
from app.settlement.errors import GatewayError
from app.settlement.events import parse_provider_timestamp
from services.redaction import redact_dict

logger = logging.getLogger("marketsettle.providers")

SIGNATURE_HEADER = "X-Gateway-Signature"

_VERIFY_STATUS = {
    "success": "success",
    "failed": "failed",
    "abandoned": "failed",
    "reversed": "reversed",
}


class HttpSplitGateway:
    """Paystack-style split gateway: amounts in minor units, bearer auth."""

    name = "split"

    def __init__(self, *, base_url: str, secret_key: str, callback_url: str = "", http: HttpClient):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.http = http

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _data(self, resp: HttpResponse, op: str) -> dict[str, Any]:
        body = resp.json or {}
        if resp.status_code >= 400 or body.get("status") is False:
            message = body.get("message") or resp.text[:200] or f"HTTP {resp.status_code}"
            logger.warning("split_gateway_rejected op=%s status=%s body=%s", op, resp.status_code, redact_dict(body))
            raise GatewayError(
                f"{op} rejected: {message}",
                code="GATEWAY_REJECTED",
                retryable=is_retryable_http(resp.status_code),
                response=body,
            )
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def initialize(
        self,
        *,
        reference: str,
        amount_cents: int,
        email: str,
        split: Sequence[tuple[str, Decimal]],
        metadata: dict[str, Any],
    ) -> GatewayResult:
        payload = {
            "email": email,
            "amount": int(amount_cents),
            "reference": reference,
            "callback_url": self.callback_url or None,
            "metadata": metadata,
            "split": {
                "type": "percentage",
                "bearer_type": "account",
                "subaccounts": [{"subaccount": code, "share": float(share)} for code, share in split],
            },
        }
        resp = self.http.post(f"{self.base_url}/transaction/initialize", headers=self._headers(), json_body=payload)
        data = self._data(resp, "initialize")
        return GatewayResult(
            status="initiated",
            reference=data.get("reference") or reference,
            authorization_url=data.get("authorization_url"),
            response=data,
        )

    def verify(self, reference: str) -> GatewayResult:
        resp = self.http.get(f"{self.base_url}/transaction/verify/{reference}", headers=self._headers())
        data = self._data(resp, "verify")
        return GatewayResult(
            status=_VERIFY_STATUS.get(str(data.get("status") or "").lower(), "pending"),
            reference=data.get("reference") or reference,
            amount_cents=_as_int(data.get("amount")),
            fee_cents=_as_int(data.get("fees")),
            paid_at=parse_provider_timestamp(data.get("paid_at") or data.get("paidAt")),
            channel=data.get("channel"),
            response=data,
        )

    def refund(self, *, reference: str, amount_cents: Optional[int], metadata: dict[str, Any]) -> GatewayResult:
        payload: dict[str, Any] = {"transaction": reference, "metadata": metadata}
        # omitted amount => full refund
        if amount_cents is not None:
            payload["amount"] = int(amount_cents)
        resp = self.http.post(f"{self.base_url}/refund", headers=self._headers(), json_body=payload)
        data = self._data(resp, "refund")
        return GatewayResult(status="pending", reference=reference, amount_cents=_as_int(data.get("amount")), response=data)

    def transfer(self, *, reference: str, amount_cents: int, recipient: Optional[str], reason: str) -> GatewayResult:
        if not recipient:
            raise GatewayError("Seller has no transfer recipient", code="MISSING_RECIPIENT")
        payload = {
            "source": "balance",
            "amount": int(amount_cents),
            "recipient": recipient,
            "reason": reason,
            "reference": reference,
        }
        resp = self.http.post(f"{self.base_url}/transfer", headers=self._headers(), json_body=payload)
        data = self._data(resp, "transfer")
        status = str(data.get("status") or "").lower()
        if status in ("failed", "reversed"):
            raise GatewayError(f"transfer {reference} {status}", code="TRANSFER_FAILED", response=data)
        return GatewayResult(status="transferred", reference=data.get("reference") or reference, response=data)


def sign_payload(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()


def verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret:
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"
    if not signature_header:
        return False, "MISSING_SIGNATURE"
    expected = sign_payload(secret, raw)
    if not hmac.compare_digest(signature_header.strip().lower(), expected):
        return False, "INVALID_SIGNATURE"
    return True, None


def _as_int(value: Any) -> Optional[int]:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None
