"""Logging setup and credential redaction.

WHY: Slack tokens (xoxb-, xoxp-, ...) and Bearer headers can end up in
exception messages and SDK error payloads. Provider errors and stack
traces are logged server-side only, so the log stream must be scrubbed
before anything is written.

HOW: configure_logging() installs the same basicConfig format the rest
of the project uses and attaches a RedactingFilter to every root
handler. describe_slack_error() reduces a SlackApiError to the few
fields worth logging.

RULES:
- Redaction applies to the fully formatted message, args included
- describe_slack_error never returns headers or tokens
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

_TOKEN_RE = re.compile(r"xox[abeoprs]-[A-Za-z0-9-]+")
_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-_.=]+", re.IGNORECASE)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def redact(text: str) -> str:
    """Replace Slack tokens and Bearer credentials with placeholders."""
    text = _TOKEN_RE.sub("[REDACTED_TOKEN]", text)
    return _BEARER_RE.sub("Bearer [REDACTED]", text)


class RedactingFilter(logging.Filter):
    """Scrub credentials from every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            exc_text = redact(str(exc))
            if exc_text != str(exc):
                # Formatter renders exc_text verbatim when it is set
                record.exc_text = redact(logging.Formatter().formatException(record.exc_info))
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with redaction on every handler."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())


def describe_slack_error(exc: BaseException) -> Dict[str, Any]:
    """Build a compact, token-free summary of a Slack Web API error.

    WHY: SlackApiError carries the full response, including request
    headers on some SDK paths. Only the error code and scope hints
    help when debugging.

    RULES:
    - Always includes "message" (redacted)
    - Includes "error", "needed", "provided" when the response has them
    """
    summary = {"message": redact(str(exc))}  # type: Dict[str, Any]
    response = getattr(exc, "response", None)
    data = getattr(response, "data", response)
    if isinstance(data, dict):
        for key in ("error", "needed", "provided", "warning"):
            if key in data:
                summary[key] = data[key]
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        summary["status"] = status
    return summary


def slack_error_code(exc: BaseException) -> str:
    """Return Slack's short error code (e.g. "missing_scope"), or ""."""
    response = getattr(exc, "response", None)
    if response is None:
        return ""
    try:
        code = response.get("error")
    except Exception:
        data = getattr(response, "data", None)
        code = data.get("error") if isinstance(data, dict) else None
    return code if isinstance(code, str) else ""
