"""Keeps the Home Assistant bearer token out of log output."""

from __future__ import annotations

import logging
import re

import httpx

_BEARER_PATTERN = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+\-/]+=*")
_TOKEN_PAIR_PATTERN = re.compile(r"(?i)(\b(?:access_token|token)\s*[=:]\s*)([^&\s,;\"'<>]+)")

_REDACTED_LOGGERS = ("", "uvicorn.error", "httpx", "labstatus")
_http_logger = logging.getLogger("labstatus.http")


def redact_text(value: str | None) -> str | None:
    if value is None:
        return None
    text = _BEARER_PATTERN.sub("Bearer ***", str(value))
    return _TOKEN_PAIR_PATTERN.sub(r"\1***", text)


class SecretRedactionFilter(logging.Filter):
    """Rewrites each record's message with tokens masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_text(record.getMessage()) or ""
        record.args = ()
        return True


def install_log_redaction() -> None:
    redaction_filter = SecretRedactionFilter()
    for name in _REDACTED_LOGGERS:
        target = logging.getLogger(name)
        for holder in (target, *target.handlers):
            if not any(isinstance(f, SecretRedactionFilter) for f in holder.filters):
                holder.addFilter(redaction_filter)

    # httpx logs every request line at INFO; the hooks below replace it.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _on_response(response: httpx.Response) -> None:
    _http_logger.info("%s %s -> %d", response.request.method, response.request.url, response.status_code)


def httpx_event_hooks() -> dict[str, list]:
    return {"response": [_on_response]}
