"""Startup-time helpers for safe config logging."""

from bikepay.common.config import Settings
from bikepay.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def _safe_value(name: str, value) -> str:
    """Return a printable value with redaction for secret-like setting names."""

    if value is None or value == "":
        return "<unset>"
    if any(marker in name.upper() for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: Settings, keys: list[str]) -> None:
    """Log selected startup settings for quick troubleshooting."""

    config = {"service": settings.service_name}
    for key in keys:
        config[key.upper()] = _safe_value(key, getattr(settings, key, None))
    logger.info("startup_config=%s", config)
