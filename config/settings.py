"""
Configuration loader for RecordRelay.
Reads settings from a YAML file with environment variable substitution,
then applies the plain environment overrides (REDIS_URL, MAX_ATTEMPTS, ...).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class QueueConfig:
    backend: str = "memory"                     # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "record_relay"
    dead_letter_queue_name: str = "record_relay:dlq"
    connect_attempts: int = 5                   # startup attempts before giving up
    connect_retry_delay_ms: int = 2000
    ready_check_attempts: int = 5               # per-operation waits while reconnecting
    ready_check_interval_ms: int = 500
    pop_timeout_ms: int = 1000
    push_attempts: int = 10                     # resubmission pushes before logging the loss
    push_retry_delay_ms: int = 1000


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 30000                  # linear: base * attempt
    batch_size: int = 10
    concurrent_batches: int = 3
    worker_concurrency: int = 15
    pacing_delay_ms: int = 1000                 # pause after each worker chunk
    ttl_ms: int = 10 * 60 * 1000
    process_timeout_ms: int = 120000

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            minimum = 0 if f.name in ("base_delay_ms", "pacing_delay_ms") else 1
            if not isinstance(value, int) or value < minimum:
                raise ValueError(f"RetryPolicy.{f.name} must be an integer >= {minimum}, got {value!r}")

    @property
    def max_batch(self) -> int:
        return self.batch_size * self.concurrent_batches


@dataclass
class QuotaConfig:
    enabled: bool = True
    low_water_mark: int = 1_000_000             # defer when remaining budget is below this
    high_water_mark: int = 5_000_000            # defer when one operation costs more than this
    defer_delay_ms: int = 15000                 # below retry.base_delay_ms
    transient_defer_delay_ms: int = 60000


@dataclass
class ConsumerConfig:
    shutdown_timeout_ms: int = 30000
    error_backoff_ms: int = 1000


@dataclass
class BackendConfig:
    type: str = "mock"                          # "mock" | "http"
    processing_url: str = ""
    budget_url: str = ""
    api_version: str = ""
    operation_cost: int = 0                     # estimated cost of one update
    timeout_s: float = 30.0


@dataclass
class Settings:
    app_name: str = "RecordRelay"
    debug: bool = False
    log_format: str = "console"                 # "console" | "json"
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)


_settings: Optional[Settings] = None

# env var → (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "QUEUE_BACKEND": ("queue", "backend"),
    "REDIS_URL": ("queue", "redis_url"),
    "QUEUE_NAME": ("queue", "queue_name"),
    "DEAD_LETTER_QUEUE_NAME": ("queue", "dead_letter_queue_name"),
    "STORE_CONNECT_ATTEMPTS": ("queue", "connect_attempts"),
    "MAX_ATTEMPTS": ("retry", "max_attempts"),
    "BASE_DELAY_MS": ("retry", "base_delay_ms"),
    "BATCH_SIZE": ("retry", "batch_size"),
    "CONCURRENT_BATCHES": ("retry", "concurrent_batches"),
    "WORKER_CONCURRENCY": ("retry", "worker_concurrency"),
    "PACING_DELAY_MS": ("retry", "pacing_delay_ms"),
    "TTL_MS": ("retry", "ttl_ms"),
    "QUOTA_LOW_WATER_MARK": ("quota", "low_water_mark"),
    "BACKEND_TYPE": ("backend", "type"),
    "PROCESSING_URL": ("backend", "processing_url"),
    "BUDGET_URL": ("backend", "budget_url"),
    "LOG_FORMAT": ("", "log_format"),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _coerce(current: Any, raw: Any) -> Any:
    """Cast a raw (usually string) value to the type of the current default."""
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _build_section(cls, defaults, raw: dict[str, Any]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    values = {k: _coerce(getattr(defaults, k), v) for k, v in raw.items() if k in known}
    return replace(defaults, **values)


def apply_env_overrides(settings: Settings, environ: dict[str, str] = None) -> Settings:
    environ = os.environ if environ is None else environ
    for var, (section, name) in _ENV_OVERRIDES.items():
        if var not in environ or environ[var] == "":
            continue
        if not section:
            setattr(settings, name, _coerce(getattr(settings, name), environ[var]))
            continue
        current = getattr(settings, section)
        value = _coerce(getattr(current, name), environ[var])
        # RetryPolicy is frozen, so every section is rebuilt rather than mutated
        setattr(settings, section, replace(current, **{name: value}))
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    load_dotenv()

    if config_path is None:
        config_path = os.environ.get(
            "RECORD_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_format = raw.get("log_format", settings.log_format)

        if "queue" in raw:
            settings.queue = _build_section(QueueConfig, settings.queue, raw["queue"])
        if "retry" in raw:
            settings.retry = _build_section(RetryPolicy, settings.retry, raw["retry"])
        if "quota" in raw:
            settings.quota = _build_section(QuotaConfig, settings.quota, raw["quota"])
        if "consumer" in raw:
            settings.consumer = _build_section(ConsumerConfig, settings.consumer, raw["consumer"])
        if "backend" in raw:
            settings.backend = _build_section(BackendConfig, settings.backend, raw["backend"])

    settings = apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
