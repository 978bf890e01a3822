"""
Configuration loader for the LessonRelay delivery pipeline.
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
class WhatsAppConfig:
    api_url: str = "https://graph.facebook.com"
    api_version: str = "v19.0"
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""                # enables X-Hub-Signature-256 checks when set
    language: str = "tr"
    request_timeout: float = 60.0       # seconds before a send counts as a transient failure


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "lessonrelay"
    rate_limit_per_second: int = 12     # jobs admitted to in-flight per category per window
    max_retries: int = 3
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    history_limit: int = 5              # terminal jobs kept per outcome for inspection
    poll_interval: float = 0.5          # seconds a worker idles when nothing is due
    visibility_timeout: int = 600       # seconds a taken job may stay in_flight before it is reclaimed


@dataclass
class WorkerConfig:
    concurrency: int = 5                # concurrent deliveries per category
    attachment_delay_seconds: float = 60.0
    categories: list[str] = field(default_factory=lambda: [
        "lesson", "reminder", "notification", "welcome", "text",
    ])


@dataclass
class SchedulerConfig:
    timezone: str = "Europe/Istanbul"
    reminder_lead_hours: int = 2
    lease_seconds: int = 300            # how long a fan-out claim on a cursor is honoured


@dataclass
class RetentionConfig:
    job_retention_hours: int = 24
    context_retention_hours: int = 184
    sweep_interval_hours: int = 6


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./lessonrelay.db"           # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    fallback_reply: str = "Thanks for your message! We'll get back to you shortly."


@dataclass
class FingerprintConfig:
    text_prefix_length: int = 32


@dataclass
class Settings:
    app_name: str = "LessonRelay"
    debug: bool = False
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)


_settings: Optional[Settings] = None


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


def _section(cls, raw: dict[str, Any], current):
    """Build a config dataclass from a raw YAML section, keeping defaults for missing keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    merged = {name: getattr(current, name) for name in cls.__dataclass_fields__}
    merged.update(known)
    return cls(**merged)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LESSONRELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "whatsapp" in raw:
            settings.whatsapp = _section(WhatsAppConfig, raw["whatsapp"], settings.whatsapp)
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "workers" in raw:
            settings.workers = _section(WorkerConfig, raw["workers"], settings.workers)
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)
        if "retention" in raw:
            settings.retention = _section(RetentionConfig, raw["retention"], settings.retention)
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"], settings.llm)
        if "fingerprint" in raw:
            settings.fingerprint = _section(FingerprintConfig, raw["fingerprint"], settings.fingerprint)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
