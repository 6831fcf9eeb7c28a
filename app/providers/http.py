# app/providers/http.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from app.settlement.errors import GatewayError

logger = logging.getLogger("marketsettle.providers")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


class HttpClient:
    def __init__(
        self,
        timeout_s: float = 20.0,
        *,
        attempts: int = 3,
        backoff_s: float = 1.0,
        follow_redirects: bool = True,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects, transport=transport)
        self.attempts = max(int(attempts), 1)
        self.backoff_s = backoff_s
        self._sleep = sleep

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
    ) -> HttpResponse:
        """
        Send with bounded retries on transport errors and retryable statuses.
        Raises GatewayError once attempts are spent; other responses are returned as-is.
        """
        last_error: str | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                r = self._client.request(method, url, headers=headers, json=json_body)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("gateway_http_error method=%s url=%s attempt=%s error=%s", method, url, attempt, last_error)
            else:
                resp = self._wrap(r)
                if not is_retryable_http(resp.status_code):
                    return resp
                last_error = f"HTTP {resp.status_code}"
                logger.warning("gateway_http_retryable method=%s url=%s attempt=%s status=%s", method, url, attempt, resp.status_code)

            if attempt < self.attempts:
                self._sleep(self.backoff_s)

        raise GatewayError(
            f"{method} {url} failed after {self.attempts} attempts ({last_error})",
            code="GATEWAY_UNAVAILABLE",
            retryable=True,
        )

    def post(self, url: str, *, headers: dict[str, str], json_body: dict[str, Any] | None = None) -> HttpResponse:
        return self.request("POST", url, headers=headers, json_body=json_body)

    def get(self, url: str, *, headers: dict[str, str]) -> HttpResponse:
        return self.request("GET", url, headers=headers)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if payload is not None and not isinstance(payload, dict):
            payload = {"data": payload}
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)


def is_retryable_http(code: int) -> bool:
    # Retry transient / throttling / gateway issues
    return code in (408, 425, 429, 500, 502, 503, 504)
