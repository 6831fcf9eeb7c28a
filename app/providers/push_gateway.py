# app/providers/push_gateway.py
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from app.providers.base import GatewayResult
from app.providers.http import HttpClient, is_retryable_http
from app.settlement.errors import GatewayError, ValidationError
from services.redaction import redact_dict

logger = logging.getLogger("marketsettle.providers")

SIGNATURE_HEADER = "X-Signature"


class HttpPushGateway:
    """
    Phone-push gateway. Initiation only returns an acknowledgement; the outcome
    arrives by webhook. Payouts and refunds are settled out of band.
    """

    name = "push"

    def __init__(self, *, base_url: str, api_key: str, channel_id: str, callback_url: str, http: HttpClient):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.channel_id = channel_id
        self.callback_url = callback_url
        self.http = http

    def push(self, *, amount_cents: int, phone: str, account_reference: str, description: str) -> GatewayResult:
        units = whole_units(amount_cents)
        payload = {
            "amount": units,
            "phone_number": phone,
            "channel_id": self.channel_id,
            "account_reference": account_reference,
            "transaction_desc": description,
            "callback_url": self.callback_url,
        }
        resp = self.http.post(
            f"{self.base_url}/payments.php",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json_body=payload,
        )
        body = resp.json or {}
        if resp.status_code >= 400 or not body.get("success"):
            logger.warning("push_gateway_rejected status=%s body=%s", resp.status_code, redact_dict(body))
            raise GatewayError(
                body.get("message") or "Payment initiation failed",
                code="GATEWAY_REJECTED",
                retryable=is_retryable_http(resp.status_code),
                response=body,
            )
        # ack-only responses leave the reference to the caller; the order-scoped
        # account reference is shared by every attempt on the order
        reference = body.get("reference") or body.get("external_reference")
        if reference == account_reference:
            reference = None
        return GatewayResult(status="initiated", reference=reference, response=body)

    def transfer(self, *, reference: str, amount_cents: int, recipient: Optional[str], reason: str) -> GatewayResult:
        return manual_transfer(reference=reference, amount_cents=amount_cents, reason=reason)


def whole_units(amount_cents: int) -> int:
    """The push gateway only charges whole currency units."""
    units, rest = divmod(int(amount_cents), 100)
    if rest or units <= 0:
        raise ValidationError(
            f"Push payments need a positive whole-unit amount, got {amount_cents} cents",
            code="INVALID_AMOUNT",
        )
    return units


def manual_transfer(*, reference: str, amount_cents: int, reason: str) -> GatewayResult:
    logger.info("manual_transfer reference=%s amount_cents=%s reason=%s", reference, amount_cents, reason)
    return GatewayResult(status="transferred", reference=reference, response={"manual": True})


def manual_reference(seller_id: Any) -> str:
    return f"MANUAL-{int(time.time() * 1000)}-{seller_id}"


def sign_payload(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret:
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"
    if not signature_header:
        return False, "MISSING_SIGNATURE"

    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided.split("=", 1)[1].strip()

    expected = sign_payload(secret, raw)
    if not hmac.compare_digest(provided.lower(), expected):
        return False, "INVALID_SIGNATURE"
    return True, None
