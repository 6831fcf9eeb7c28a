from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
# E.164 with "+", or the bare 2547XXXXXXXX form push-payment callbacks carry
_PHONE_RE = re.compile(r"\+\d{6,15}|\b254\d{9}\b")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "signature",
    "password",
    "api_key",
    "apikey",
    "account_number",
)


def _mask_email(match: re.Match) -> str:
    return f"{match.group(1)}***{match.group(3)}"


def mask_phone(value: str) -> str:
    if len(value) <= 8:
        return value
    return f"{value[:6]}****{value[-2:]}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    masked = _PHONE_RE.sub(lambda match: mask_phone(match.group(0)), masked)

    for marker in ("access_token", "secret_key", "bearer"):
        if marker in masked.lower():
            return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy of a gateway payload safe for logs and the webhook audit table."""
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        else:
            out[k] = redact_value(v)
    return out
