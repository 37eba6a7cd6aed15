"""Structured JSON logging with cycle context fields and secret redaction."""

import logging
import re
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter


cycle_id_ctx: ContextVar[str] = ContextVar("cycle_id", default="")
trigger_ctx: ContextVar[str] = ContextVar("trigger", default="")

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "code", "credential")

_STANDARD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "service_name",
    "cycle_id",
    "trigger",
}

_VALUE_PATTERNS = [
    re.compile(r"(?i)\b(password|passwd|token|api[_-]?key|secret|credential)s?(\s*[:=]\s*)[\"']?[^\s\"',]+"),
    re.compile(r"(?i)bearer\s+[\w\-.=]+"),
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    re.compile(r"\b(?:\d[ -]?){12,18}\d\b"),
    # Long mixed alphanumeric runs: gift card codes, keys, TOTP seeds.
    re.compile(r"\b(?=[A-Za-z0-9]*\d)(?=[A-Za-z0-9]*[A-Za-z])[A-Za-z0-9]{16,}\b"),
]


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact_text(text: str) -> str:
    """Replace secret-looking substrings of a rendered log message."""

    for pattern in _VALUE_PATTERNS:
        if pattern.groups >= 2:
            text = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


def redact_value(key: str, value):
    """Redact one structured value by key name, recursing into containers."""

    if is_sensitive_key(key):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(key, v) for v in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def mask_code(code: str) -> str:
    """Show only the last four characters of a gift card code."""

    if len(code) <= 4:
        return "****"
    return f"****{code[-4:]}"


class ContextFilter(logging.Filter):
    """Inject service and cycle identifiers into every log record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.cycle_id = cycle_id_ctx.get()
        record.trigger = trigger_ctx.get()
        return True


class RedactionFilter(logging.Filter):
    """Strip credentials and codes from messages and structured extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            rendered = str(record.msg)
        record.msg = redact_text(rendered)
        record.args = ()
        for key, value in list(record.__dict__.items()):
            if key in _STANDARD_ATTRS:
                continue
            setattr(record, key, redact_value(key, value))
        return True


def configure_logging(service_name: str, log_level: str = "INFO") -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter(service_name))
    handler.addFilter(RedactionFilter())
    formatter = JsonFormatter("%(asctime)s %(levelname)s %(service_name)s %(cycle_id)s %(trigger)s %(message)s")
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)


logger = logging.getLogger("cardrelay")
