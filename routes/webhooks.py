# routes/webhooks.py
from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.providers import push_gateway, split_gateway
from app.settlement.engine import SettlementEngine
from app.settlement.errors import GatewayError, RetryExhausted, SettlementError, ValidationError
from app.settlement.events import push_callback_to_event, split_webhook_to_event
from deps.settlement import get_engine
from middleware import safe_headers
from schemas import WebhookAck
from services.metrics import increment_webhook_event
from services.observability import get_request_id
from services.redaction import redact_dict
from settings import settings

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])

logger = logging.getLogger("marketsettle.webhooks")

_ENV_SECRET_BY_GATEWAY = {
    "push": "PUSH_WEBHOOK_SECRET",
    "split": "SPLIT_GATEWAY_SECRET_KEY",
}

_SIGNATURE_HEADER = {
    "push": push_gateway.SIGNATURE_HEADER,
    "split": split_gateway.SIGNATURE_HEADER,
}

_VERIFIER: dict[str, Callable[..., tuple[bool, str | None]]] = {
    "push": push_gateway.verify_signature,
    "split": split_gateway.verify_signature,
}

_TO_EVENT: dict[str, Callable[[dict[str, Any]], Any]] = {
    "push": push_callback_to_event,
    "split": split_webhook_to_event,
}


def _get_secret(gateway: str) -> str | None:
    key = _ENV_SECRET_BY_GATEWAY.get(gateway)
    if not key:
        return None
    value = os.getenv(key)
    if value and value.strip():
        return value.strip()
    return getattr(settings, key, None) or None


def _audit(engine: SettlementEngine, **fields: Any) -> None:
    # audit trail is best effort; the ack must not depend on it
    try:
        with engine.connect() as conn:
            engine.store.record_webhook_event(conn, **fields)
    except Exception as exc:
        logger.warning("webhook_audit_failed gateway=%s error=%s", fields.get("gateway"), type(exc).__name__)


async def _handle_webhook(
    req: Request,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine,
    *,
    gateway: str,
) -> dict[str, Any]:
    raw = await req.body()
    request_id = get_request_id()
    headers = safe_headers(dict(req.headers))

    def audit(**fields: Any) -> None:
        _audit(engine, gateway=gateway, path=req.url.path, request_id=request_id, headers=headers, **fields)

    ok, sig_err = _VERIFIER[gateway](
        raw=raw,
        signature_header=req.headers.get(_SIGNATURE_HEADER[gateway]),
        secret=_get_secret(gateway),
    )
    if not ok:
        logger.warning("webhook_rejected gateway=%s request_id=%s reason=%s", gateway, request_id, sig_err)
        increment_webhook_event(gateway, False, "rejected")
        await run_in_threadpool(audit, signature_valid=False, signature_error=sig_err, outcome="rejected")
        if sig_err == "WEBHOOK_SECRET_NOT_CONFIGURED":
            raise HTTPException(status_code=500, detail={"error": sig_err, "gateway": gateway})
        raise HTTPException(status_code=401, detail={"error": sig_err})

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        increment_webhook_event(gateway, True, "invalid")
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON"})
    if not isinstance(payload, dict):
        increment_webhook_event(gateway, True, "invalid")
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON_OBJECT"})

    try:
        event = _TO_EVENT[gateway](payload)
    except ValidationError as exc:
        logger.warning("webhook_unrecognised gateway=%s code=%s body=%s", gateway, exc.code, redact_dict(payload))
        increment_webhook_event(gateway, True, "invalid")
        await run_in_threadpool(audit, body=redact_dict(payload), signature_valid=True, outcome=exc.code)
        raise HTTPException(status_code=400, detail={"error": exc.code, "message": exc.message})

    try:
        result = await run_in_threadpool(engine.handle_event, event)
    except (RetryExhausted, GatewayError) as exc:
        # not acknowledged, so the gateway redelivers
        logger.error("webhook_processing_unavailable gateway=%s reference=%s code=%s", gateway, event.reference, exc.code)
        increment_webhook_event(gateway, True, "retry")
        raise HTTPException(status_code=503, detail={"error": exc.code, "message": exc.message})
    except SettlementError as exc:
        # deterministic failure: redelivery would fail the same way
        logger.error("webhook_processing_failed gateway=%s reference=%s code=%s message=%s", gateway, event.reference, exc.code, exc.message)
        increment_webhook_event(gateway, True, "error")
        await run_in_threadpool(
            audit, body=redact_dict(payload), signature_valid=True, reference=event.reference, event_kind=event.kind, outcome=exc.code
        )
        return {"ok": True, "gateway": gateway, "outcome": "error", "reference": event.reference}

    background_tasks.add_task(engine.dispatch, result)
    increment_webhook_event(gateway, True, result.outcome)
    await run_in_threadpool(
        audit, body=redact_dict(payload), signature_valid=True, reference=event.reference, event_kind=event.kind, outcome=result.outcome
    )
    logger.info(
        "webhook_processed gateway=%s request_id=%s kind=%s reference=%s outcome=%s",
        gateway,
        request_id,
        event.kind,
        event.reference,
        result.outcome,
    )
    return {"ok": True, "gateway": gateway, "outcome": result.outcome, "reference": event.reference}


@router.post("/push", response_model=WebhookAck)
async def push_webhook(req: Request, background_tasks: BackgroundTasks, engine: SettlementEngine = Depends(get_engine)):
    return await _handle_webhook(req, background_tasks, engine, gateway="push")


@router.post("/split", response_model=WebhookAck)
async def split_webhook(req: Request, background_tasks: BackgroundTasks, engine: SettlementEngine = Depends(get_engine)):
    return await _handle_webhook(req, background_tasks, engine, gateway="split")
