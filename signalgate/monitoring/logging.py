"""Gateway log setup: JSON events on stdout, errors also in a rotating file.

Every event passes through ``SecretRedactor`` before rendering, so webhook
secrets, signatures and broker tokens never reach a log sink even when a
caller binds them by mistake. Request handling binds ``request_id`` and
``remote_ip`` with ``request_context`` so each line of one webhook delivery
can be grouped.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

import structlog

from signalgate.config.settings import MonitoringConfig, Settings

REDACTED = "<redacted>"

SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "webhook_secret",
        "signature",
        "authorization",
        "api_key",
        "broker_api_key",
        "token",
        "password",
    }
)

# Broker requests carry the API key in headers; keep wire-level traces out.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class SecretRedactor:
    """structlog processor that masks sensitive keys and known secret values."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        # very short values would mask unrelated text
        self.secrets = sorted({s for s in secrets if s and len(s) >= 4}, key=len, reverse=True)

    def _scrub(self, key: str | None, value: Any) -> Any:
        if key is not None and key.lower() in SENSITIVE_KEYS:
            return REDACTED
        if isinstance(value, str):
            for secret in self.secrets:
                if secret in value:
                    value = value.replace(secret, REDACTED)
            return value
        if isinstance(value, dict):
            return {k: self._scrub(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(None, v) for v in value]
        return value

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        return {key: self._scrub(key, value) for key, value in event_dict.items()}


def request_context(request_id: str, remote_ip: str | None = None):
    """Bind per-delivery fields to every event logged inside the block."""
    return structlog.contextvars.bound_contextvars(request_id=request_id, remote_ip=remote_ip)


def settings_secrets(settings: Settings) -> list[str]:
    return [settings.webhook_secret, settings.broker_api_key]


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
    secrets: Iterable[str] = (),
) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    if logs_path:
        log_dir = Path(logs_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        monitoring = monitoring or MonitoringConfig()
        errors = RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=monitoring.error_log_max_bytes,
            backupCount=monitoring.error_log_backup_count,
            encoding="utf-8",
        )
        errors.setLevel(logging.ERROR)
        errors.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(errors)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            SecretRedactor(secrets),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
