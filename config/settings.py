"""
Configuration loader for the engagement-window dispatcher.
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
class MessagingConfig:
    window_hours: int = 24
    max_retries: int = 3
    retry_delay_seconds: int = 300          # fixed backoff between follow-up attempts
    follow_up_delay_seconds: int = 86400    # template → follow-up delay
    tick_interval_seconds: int = 300
    prune_interval_seconds: int = 86400
    retention_days: int = 30
    send_timeout_seconds: float = 15.0


@dataclass
class StorageConfig:
    backend: str = "memory"                 # "memory" | "file"
    file_dir: str = "./data"
    cache_key: str = "whatsapp_user_engagement_cache"


@dataclass
class APIConfig:
    base_url: str = ""
    auth_token: str = ""
    timeout_seconds: float = 15.0
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "chat_detail": "/chat/detail/{conversation_id}",
        "send_message": "/chat/sendmsg/{conversation_id}",
        "send_template": "/chat/template/{conversation_id}",
    })


@dataclass
class TemplatesConfig:
    include_defaults: bool = True           # false: only configured types + follow-up reminder
    definitions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Settings:
    app_name: str = "EngagementDispatcher"
    debug: bool = False
    timezone: str = "UTC"
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)
    templates: TemplatesConfig = field(default_factory=TemplatesConfig)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ENGAGEMENT_CONFIG",
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

        if "messaging" in raw:
            m = raw["messaging"] or {}
            defaults = MessagingConfig()
            settings.messaging = MessagingConfig(
                window_hours=int(m.get("window_hours", defaults.window_hours)),
                max_retries=int(m.get("max_retries", defaults.max_retries)),
                retry_delay_seconds=int(m.get("retry_delay_seconds", defaults.retry_delay_seconds)),
                follow_up_delay_seconds=int(m.get("follow_up_delay_seconds", defaults.follow_up_delay_seconds)),
                tick_interval_seconds=int(m.get("tick_interval_seconds", defaults.tick_interval_seconds)),
                prune_interval_seconds=int(m.get("prune_interval_seconds", defaults.prune_interval_seconds)),
                retention_days=int(m.get("retention_days", defaults.retention_days)),
                send_timeout_seconds=float(m.get("send_timeout_seconds", defaults.send_timeout_seconds)),
            )

        if "storage" in raw:
            s = raw["storage"] or {}
            settings.storage = StorageConfig(
                backend=s.get("backend", settings.storage.backend),
                file_dir=s.get("file_dir", settings.storage.file_dir),
                cache_key=s.get("cache_key", settings.storage.cache_key),
            )

        if "api" in raw:
            a = raw["api"] or {}
            api = APIConfig(
                base_url=a.get("base_url", ""),
                auth_token=a.get("auth_token", ""),
                timeout_seconds=float(a.get("timeout_seconds", 15.0)),
            )
            # Partial endpoint overrides keep the remaining defaults
            api.endpoints.update(a.get("endpoints", {}) or {})
            settings.api = api

        if "templates" in raw:
            t = raw["templates"] or {}
            settings.templates = TemplatesConfig(
                include_defaults=bool(t.get("include_defaults", True)),
                definitions=list(t.get("definitions") or []),
            )

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
