"""Startup-time helpers for safe config logging."""

from cardrelay.common.config import CommonSettings
from cardrelay.common.logging import is_sensitive_key, logger


def _safe_value(name: str, value) -> str:
    """Return a printable setting value with secret-like names redacted."""

    if value is None:
        return "<unset>"
    if is_sensitive_key(name) or any(secret in name.upper() for secret in ["KEY", "DSN", "WEBHOOK"]):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: CommonSettings, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": settings.service_name}
    for key in keys:
        config[key] = _safe_value(key, getattr(settings, key, None))
    logger.info("startup_config=%s", config)
