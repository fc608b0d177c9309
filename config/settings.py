"""
Configuration loader for the mail queue service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RedisConfig:
    enabled: bool = True
    url: str = "redis://localhost:6379/0"
    pool_size: int = 20


@dataclass
class QueueConfig:
    key_prefix: str = "mailqueue:email"
    base_workers: int = 3               # baseline; floor/ceiling/thresholds derive from it
    max_retry: int = 3
    retry_base_delay: int = 30          # seconds; delay = retry * base
    pop_timeout: float = 5.0            # blocking pop bound, seconds
    error_backoff: float = 1.0          # pause after a failed fetch
    promote_interval: float = 5.0       # seconds between delayed-queue scans
    promote_batch_size: int = 100
    monitor_interval: float = 30.0      # seconds between scaling checks
    idle_timeout: float = 300.0         # idle seconds before a worker may be reclaimed
    dedupe_window: int = 86400          # content fingerprint TTL
    processing_ttl: int = 600           # "processing" marker TTL
    sent_ttl: int = 86400               # "sent" marker TTL
    shutdown_timeout: float = 10.0

    @property
    def min_workers(self) -> int:
        return max(1, self.base_workers // 2)

    @property
    def max_workers(self) -> int:
        return self.base_workers * 3

    @property
    def scale_up_threshold(self) -> int:
        return self.base_workers * 10

    @property
    def scale_down_threshold(self) -> int:
        return self.base_workers * 2


@dataclass
class SmtpConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 25
    username: str = ""
    password: str = ""
    from_address: str = ""
    mail_type: str = "html"             # "html" | "plain"
    use_tls: bool = False               # implicit TLS (port 465)
    start_tls: bool = False             # STARTTLS (port 587)
    timeout: float = 30.0


@dataclass
class Settings:
    app_name: str = "MailQueue"
    debug: bool = False
    redis: RedisConfig = field(default_factory=RedisConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return os.environ.get(var_name, match.group(0))
        return os.environ.get(var_name, default)
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass, ignoring unknown keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "MAILQUEUE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "redis" in raw:
            settings.redis = _build(RedisConfig, raw["redis"] or {})
        if "queue" in raw:
            settings.queue = _build(QueueConfig, raw["queue"] or {})
        if "smtp" in raw:
            settings.smtp = _build(SmtpConfig, raw["smtp"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
