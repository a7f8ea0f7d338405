"""JSON logging with PII redaction and a per-task log context.

Contacts' phone numbers and email addresses flow through every pass, so
both the message and all structured fields are scrubbed before a record is
written. ``update_log_context`` binds fields (request id, job name) to the
current task; ``clear_log_context`` drops them.
"""

import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

_REDACTIONS: list[tuple[re.Pattern[str], Any]] = [
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
    (
        re.compile(r"(?P<key>secret|token|api_key|signature)=(?P<value>[^&\s]+)", re.IGNORECASE),
        lambda match: f"{match.group('key')}=[REDACTED_TOKEN]",
    ),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*\S+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
]

# Message content and contact channels are never logged, even when the value
# does not look like an address.
REDACTED_KEYS = {
    "body",
    "email",
    "phone",
    "to",
    "from",
    "recipient",
    "to_number",
    "from_number",
    "contact_email",
    "contact_phone",
    "authorization",
    "cron_secret",
    "secret",
    "token",
    "api_key",
}

LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_RESERVED_ATTRS = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def redact_pii(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def scrub(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in REDACTED_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, (list, tuple)):
        return [scrub(item) for item in value]
    if isinstance(value, dict):
        return {item_key: scrub(item, str(item_key)) for item_key, item in value.items()}
    return value


def update_log_context(**fields: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get(), **{key: value for key, value in fields.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


class RedactingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        payload.update(scrub(LOG_CONTEXT.get()))

        fields = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        nested = fields.pop("extra", None)
        if isinstance(nested, dict):
            fields.update(nested)
        payload.update(scrub(fields))

        if record.exc_info and record.exc_info[0] is not None:
            payload["error_type"] = record.exc_info[0].__name__
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
