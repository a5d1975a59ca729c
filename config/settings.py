"""
Configuration loader for convoflow.
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
class AntiBanConfig:
    message_delay_min_ms: int = 2000
    message_delay_max_ms: int = 5000
    typing_chars_per_second: float = 30.0
    daily_message_limit: int = 1000
    channel_limits: dict[str, int] = field(default_factory=dict)   # channel_id → daily limit override

    def limit_for(self, channel_id: str) -> int:
        return int(self.channel_limits.get(channel_id, self.daily_message_limit))


@dataclass
class DispatcherConfig:
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    concurrency: int = 5
    max_attempts: int = 3
    retry_backoff_seconds: int = 300    # fixed delay between transport retries
    claim_lease_seconds: int = 120      # dispatching rows older than this are released
    retention_days: int = 7
    send_timeout_seconds: float = 30.0


@dataclass
class FlowConfig:
    max_steps_per_advance: int = 100
    default_delay_seconds: int = 3
    timer_poll_interval_seconds: float = 5.0
    timer_batch_size: int = 50
    timer_lease_seconds: int = 120      # firing timers older than this are claimed again
    ai_timeout_seconds: float = 20.0
    ai_history_limit: int = 10
    ai_fallback_message: str = "I'm here to help! Let me connect you with our team."
    integration_timeout_seconds: float = 15.0
    integration_max_attempts: int = 2


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./convoflow.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory" | "file"
    store_file_dir: str = "./data"               # directory for file backend


@dataclass
class TransportConfig:
    type: str = "mock"                  # "mock" | "http"
    base_url: str = ""
    auth_token: str = ""
    timeout_seconds: float = 30.0
    max_attempts: int = 2


@dataclass
class Settings:
    app_name: str = "convoflow"
    debug: bool = False
    timezone: str = "UTC"
    antiban: AntiBanConfig = field(default_factory=AntiBanConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)


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


def _build(cls, raw: dict[str, Any], current):
    """Overlay known keys from a YAML section onto a config dataclass."""
    values = {
        name: raw.get(name, getattr(current, name))
        for name in cls.__dataclass_fields__
    }
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVOFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "antiban" in raw:
            settings.antiban = _build(AntiBanConfig, raw["antiban"], settings.antiban)
        if "dispatcher" in raw:
            settings.dispatcher = _build(DispatcherConfig, raw["dispatcher"], settings.dispatcher)
        if "flow" in raw:
            settings.flow = _build(FlowConfig, raw["flow"], settings.flow)
        if "database" in raw:
            settings.database = _build(DatabaseConfig, raw["database"], settings.database)
        if "transport" in raw:
            settings.transport = _build(TransportConfig, raw["transport"], settings.transport)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
