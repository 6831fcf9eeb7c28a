# app/notifications/dispatcher.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional, Protocol
from uuid import UUID

import httpx

from services.metrics import increment_notification_failure

logger = logging.getLogger("marketsettle.notify")


@dataclass(frozen=True)
class NotificationEvent:
    recipient_id: UUID
    role: str  # buyer | seller | platform
    template: str
    amount_cents: int = 0
    order_id: Optional[UUID] = None
    item_id: Optional[UUID] = None
    reference: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("recipient_id", "order_id", "item_id"):
            if payload[key] is not None:
                payload[key] = str(payload[key])
        return payload


class NotificationGateway(Protocol):
    def send(self, event: NotificationEvent) -> None: ...


class LoggingNotificationGateway:
    def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification template=%s role=%s recipient=%s amount_cents=%s order_id=%s",
            event.template,
            event.role,
            event.recipient_id,
            event.amount_cents,
            event.order_id,
        )


class HttpNotificationGateway:
    def __init__(self, url: str, *, timeout_s: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_s)

    def send(self, event: NotificationEvent) -> None:
        r = self._client.post(self.url, json=event.to_payload())
        r.raise_for_status()


class NotificationDispatcher:
    """
    Post-commit, best-effort delivery. A failing send is logged and counted,
    never raised back into the settlement path.
    """

    def __init__(self, gateway: NotificationGateway):
        self.gateway = gateway

    def dispatch(self, events: Iterable[NotificationEvent]) -> int:
        sent = 0
        for event in events:
            try:
                self.gateway.send(event)
                sent += 1
            except Exception as exc:
                increment_notification_failure(event.template)
                logger.warning(
                    "notification_failed template=%s recipient=%s error=%s",
                    event.template,
                    event.recipient_id,
                    f"{type(exc).__name__}: {exc}",
                )
        return sent


def build_dispatcher(s) -> NotificationDispatcher:
    url = (s.NOTIFY_WEBHOOK_URL or "").strip()
    if url:
        return NotificationDispatcher(HttpNotificationGateway(url, timeout_s=s.NOTIFY_HTTP_TIMEOUT_S))
    return NotificationDispatcher(LoggingNotificationGateway())
