#app/webhooks/repository.py
from __future__ import annotations

from typing import Any
from psycopg2.extensions import connection as PGConn


def insert_webhook_event(
    conn: PGConn,
    *,
    gateway: str,
    path: str,
    request_id: str | None = None,
    headers: Any = None,
    body: Any = None,
    signature_valid: bool | None = None,
    signature_error: str | None = None,
    reference: str | None = None,
    event_kind: str | None = None,
    outcome: str | None = None,
) -> None:
    """
    Insert a webhook event for audit/debugging.
    NOTE: caller commits.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO market.webhook_events (
              gateway, path, request_id,
              headers, body,
              signature_valid, signature_error,
              reference, event_kind, outcome
            )
            VALUES (
              %(gateway)s, %(path)s, %(request_id)s,
              %(headers)s, %(body)s,
              %(signature_valid)s, %(signature_error)s,
              %(reference)s, %(event_kind)s, %(outcome)s
            )
            """,
            {
                "gateway": gateway,
                "path": path,
                "request_id": request_id,
                "headers": headers,
                "body": body,
                "signature_valid": signature_valid,
                "signature_error": signature_error,
                "reference": reference,
                "event_kind": event_kind,
                "outcome": outcome,
            },
        )
