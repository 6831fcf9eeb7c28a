from __future__ import annotations

import logging
from contextvars import ContextVar


_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(value: str | None) -> None:
    _request_id.set(value)


def get_request_id() -> str | None:
    return _request_id.get()


class RequestIdLogFilter(logging.Filter):
    """Stamps every record with the current request id ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


APP_LOGGERS = (
    "marketsettle",
    "marketsettle.http",
    "marketsettle.notify",
    "marketsettle.providers",
    "marketsettle.retry",
    "marketsettle.settlement",
    "marketsettle.webhooks",
)


def install_request_id_filter(logger_names=APP_LOGGERS) -> None:
    # logger filters do not run for records propagated from children
    for name in logger_names:
        logger = logging.getLogger(name)
        if not any(isinstance(f, RequestIdLogFilter) for f in logger.filters):
            logger.addFilter(RequestIdLogFilter())
