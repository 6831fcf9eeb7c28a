# app/settlement/events.py
"""
Gateway webhook payloads normalised into a closed set of settlement events.

Gateway-specific bodies are validated here, at the boundary; the engine only
ever sees one of the event models below.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.settlement.errors import ValidationError

logger = logging.getLogger("marketsettle.webhooks")


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: str = Field(min_length=1)
    # ORDER-<uuid> style reference some gateways echo back
    order_reference: Optional[str] = None


class SuccessEvent(_Event):
    kind: Literal["success"] = "success"
    gateway_fee_cents: Optional[int] = Field(default=None, ge=0)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None


class FailureEvent(_Event):
    kind: Literal["failure"] = "failure"
    reason: Optional[str] = None
    result_code: Optional[str] = None


class ReversalEvent(_Event):
    kind: Literal["reversal"] = "reversal"
    reason: Optional[str] = None


class RefundProcessedEvent(_Event):
    kind: Literal["refund_processed"] = "refund_processed"
    item_id: UUID
    amount_cents: Optional[int] = Field(default=None, ge=0)


SettlementEvent = Annotated[
    Union[SuccessEvent, FailureEvent, ReversalEvent, RefundProcessedEvent],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(SettlementEvent)


def parse_event(data: dict[str, Any]):
    try:
        return _event_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Unrecognised settlement event: {exc.errors()[0].get('msg')}", code="INVALID_EVENT") from exc


def parse_provider_timestamp(raw: Any) -> Optional[datetime]:
    """
    Accepts the fixed 14-digit YYYYMMDDHHMMSS form or ISO-8601. Returns None when
    the value is missing or malformed so callers can fall back to "now".
    """
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    try:
        if len(text) == 14 and text.isdigit():
            return datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("malformed_provider_timestamp value=%r", text)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def major_to_cents(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int((Decimal(str(raw)) * 100).to_integral_value())
    except InvalidOperation:
        return None


# -----------------------
# Gateway B (push) callbacks
# -----------------------
class _PushResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    result_code: Optional[Union[int, str]] = Field(default=None, alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    transaction_date: Optional[Union[int, str]] = Field(default=None, alias="TransactionDate")


class PushCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: Optional[str] = None
    external_reference: Optional[str] = None
    status: str
    service_fee: Optional[Union[Decimal, str]] = None
    result: _PushResult = Field(default_factory=_PushResult)


PUSH_SUCCESS_STATUSES = {"completed"}
PUSH_FAILURE_STATUSES = {"failed", "cancelled", "canceled", "timeout", "expired", "rejected"}


def push_callback_to_event(payload: dict[str, Any]):
    try:
        cb = PushCallback.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed push callback", code="INVALID_PAYLOAD") from exc

    reference = cb.external_reference or cb.transaction_id
    if not reference:
        raise ValidationError("Push callback carries no reference", code="MISSING_REFERENCE")

    status = cb.status.strip().lower()
    code = None if cb.result.result_code is None else str(cb.result.result_code)

    if status in PUSH_SUCCESS_STATUSES:
        if code == "0" and cb.transaction_id:
            return SuccessEvent(
                reference=reference,
                order_reference=cb.external_reference,
                gateway_fee_cents=major_to_cents(cb.service_fee),
                paid_at=parse_provider_timestamp(cb.result.transaction_date),
                payment_method="M-Pesa",
            )
        return FailureEvent(
            reference=reference,
            order_reference=cb.external_reference,
            reason=cb.result.result_desc,
            result_code=code,
        )

    if status in PUSH_FAILURE_STATUSES:
        return FailureEvent(
            reference=reference,
            order_reference=cb.external_reference,
            reason=cb.result.result_desc or status,
            result_code=code,
        )

    raise ValidationError(f"Unknown push callback status {cb.status!r}", code="UNKNOWN_EVENT")


# -----------------------
# Gateway A (split) webhooks
# -----------------------
class SplitWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    data: dict[str, Any]


def split_webhook_to_event(payload: dict[str, Any]):
    try:
        hook = SplitWebhook.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed split webhook", code="INVALID_PAYLOAD") from exc

    data = hook.data
    if hook.event == "refund.processed":
        tx = data.get("transaction") or {}
        reference = tx.get("reference") if isinstance(tx, dict) else None
        reference = reference or data.get("transaction_reference")
    else:
        reference = data.get("reference")
    if not reference:
        raise ValidationError("Split webhook carries no reference", code="MISSING_REFERENCE")

    if hook.event == "charge.success":
        return SuccessEvent(
            reference=reference,
            gateway_fee_cents=_int_or_none(data.get("fees")),
            amount_cents=_int_or_none(data.get("amount")),
            paid_at=parse_provider_timestamp(data.get("paid_at") or data.get("paidAt")),
            payment_method=data.get("channel"),
        )
    if hook.event == "charge.failed":
        return FailureEvent(reference=reference, reason=data.get("gateway_response"))
    if hook.event == "charge.reversed":
        return ReversalEvent(reference=reference, reason=data.get("reason"))
    if hook.event == "refund.processed":
        metadata = data.get("metadata") or {}
        return parse_event(
            {
                "kind": "refund_processed",
                "reference": reference,
                "item_id": metadata.get("item_id") or metadata.get("itemId"),
                "amount_cents": _int_or_none(data.get("amount")),
            }
        )

    raise ValidationError(f"Unknown split webhook event {hook.event!r}", code="UNKNOWN_EVENT")


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
