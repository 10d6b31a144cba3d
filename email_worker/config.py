"""Settings for the email worker.

Values come from an INI file (default: config.ini) with environment variables
as fallbacks, so a container can run with environment variables only.

Environment variables:
  EMAIL_WORKER_CONFIG - Path to config.ini file (default: config.ini)
  EMAIL_WORKER_LOG_LEVEL - Logging level (default: INFO)
  EMAIL_WORKER_METRICS_PORT - Port of the Prometheus exporter (disabled if unset)
  REDIS_URL - Queue store URL (default: redis://localhost:6379)
  SMTP_HOST - SMTP server host (default: smtp.gmail.com)
  SMTP_PORT - SMTP server port (default: 587)
  SMTP_SECURE - Connect with implicit TLS (default: false)
  SMTP_START_TLS - Upgrade plain connections with STARTTLS when offered (default: true)
  SMTP_USER / SMTP_PASS - SMTP credentials
  SMTP_FROM - Default sender (falls back to SMTP_USER)

Config file sections/keys:
  [logging] level
  [redis] url
  [smtp] host, port, secure, start_tls, user, password, from
  [queues] main, processing, retry, logs
  [delivery] max_retries, retry_base_delay, pull_timeout, retry_poll_interval,
             error_backoff, send_timeout, log_limit, stats_interval, recover_on_start
  [metrics] port
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .queue_store import QueueNames
from .retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_RETRIES

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SMTPSettings:
    """Connection parameters of the SMTP transport."""

    host: str = "smtp.gmail.com"
    port: int = 587
    secure: bool = False
    start_tls: bool = True
    user: Optional[str] = None
    password: Optional[str] = None
    default_from: Optional[str] = None

    @property
    def sender(self) -> Optional[str]:
        """Sender used when a job carries no ``from``."""
        return self.default_from or self.user or None


@dataclass(frozen=True)
class WorkerSettings:
    """Everything the worker process needs to run."""

    redis_url: str = "redis://localhost:6379"
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    queues: QueueNames = field(default_factory=QueueNames)
    log_level: str = "INFO"
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY
    pull_timeout: float = 5.0
    retry_poll_interval: float = 30.0
    error_backoff: float = 5.0
    send_timeout: Optional[float] = 30.0
    log_limit: int = 1000
    stats_interval: float = 300.0
    recover_on_start: bool = False
    metrics_port: Optional[int] = None


def load_settings(config_path: str | None = None, environ: Mapping[str, str] | None = None) -> WorkerSettings:
    """Build :class:`WorkerSettings` from config.ini and the environment."""
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("EMAIL_WORKER_CONFIG", "config.ini"))
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool = False) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        return default

    def get_str(section: str, option: str, fallback: str | None = None) -> str | None:
        value = get(section, option, fallback)
        if value is None:
            return None
        return value.strip() or None

    smtp = SMTPSettings(
        host=get_str("smtp", "host", env.get("SMTP_HOST")) or "smtp.gmail.com",
        port=get_int("smtp", "port", env.get("SMTP_PORT"), default=587),
        secure=get_bool("smtp", "secure", env.get("SMTP_SECURE"), default=False),
        start_tls=get_bool("smtp", "start_tls", env.get("SMTP_START_TLS"), default=True),
        user=get_str("smtp", "user", env.get("SMTP_USER")),
        password=get("smtp", "password", env.get("SMTP_PASS")) or None,
        default_from=get_str("smtp", "from", env.get("SMTP_FROM")),
    )
    defaults = QueueNames()
    queues = QueueNames(
        main=get_str("queues", "main") or defaults.main,
        processing=get_str("queues", "processing") or defaults.processing,
        retry=get_str("queues", "retry") or defaults.retry,
        logs=get_str("queues", "logs") or defaults.logs,
    )
    send_timeout = get_float("delivery", "send_timeout", default=30.0)

    return WorkerSettings(
        redis_url=get_str("redis", "url", env.get("REDIS_URL")) or "redis://localhost:6379",
        smtp=smtp,
        queues=queues,
        log_level=(get_str("logging", "level", env.get("EMAIL_WORKER_LOG_LEVEL")) or "INFO").upper(),
        max_retries=get_int("delivery", "max_retries", default=DEFAULT_MAX_RETRIES),
        retry_base_delay=get_float("delivery", "retry_base_delay", default=DEFAULT_BASE_DELAY),
        pull_timeout=get_float("delivery", "pull_timeout", default=5.0),
        retry_poll_interval=get_float("delivery", "retry_poll_interval", default=30.0),
        error_backoff=get_float("delivery", "error_backoff", default=5.0),
        # 0 disables the per-attempt timeout
        send_timeout=send_timeout if send_timeout and send_timeout > 0 else None,
        log_limit=get_int("delivery", "log_limit", default=1000),
        stats_interval=get_float("delivery", "stats_interval", default=300.0),
        recover_on_start=get_bool("delivery", "recover_on_start", default=False),
        metrics_port=get_int("metrics", "port", env.get("EMAIL_WORKER_METRICS_PORT")),
    )
