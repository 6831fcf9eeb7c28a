# app/providers/factory.py
from __future__ import annotations

from app.providers.base import PushGateway, SplitGateway
from app.providers.http import HttpClient
from app.providers.mock import MockPushGateway, MockSplitGateway
from app.providers.push_gateway import HttpPushGateway
from app.providers.split_gateway import HttpSplitGateway


def build_gateways(s) -> dict[str, SplitGateway | PushGateway]:
    """
    {"split": ..., "push": ...} for the configured GATEWAY_MODE.
    """
    if (s.GATEWAY_MODE or "mock").strip().lower() != "real":
        return {"split": MockSplitGateway(), "push": MockPushGateway()}

    http = HttpClient(
        s.GATEWAY_HTTP_TIMEOUT_S,
        attempts=s.GATEWAY_HTTP_ATTEMPTS,
        backoff_s=s.GATEWAY_HTTP_BACKOFF_S,
    )
    return {
        "split": HttpSplitGateway(
            base_url=s.SPLIT_GATEWAY_BASE_URL,
            secret_key=s.SPLIT_GATEWAY_SECRET_KEY,
            callback_url=s.SPLIT_GATEWAY_CALLBACK_URL,
            http=http,
        ),
        "push": HttpPushGateway(
            base_url=s.PUSH_GATEWAY_BASE_URL,
            api_key=s.PUSH_GATEWAY_API_KEY,
            channel_id=s.PUSH_GATEWAY_CHANNEL_ID,
            callback_url=s.PUSH_GATEWAY_CALLBACK_URL,
            http=http,
        ),
    }
