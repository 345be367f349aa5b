from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


@dataclass
class StreamConfig:
    connect_timeout_sec: float = 10.0
    sync_interval_sec: float = 5.0
    liveness_check_interval_sec: float = 15.0
    idle_timeout_sec: float = 90.0
    ping_grace_sec: float = 30.0
    request_timeout_sec: float = 15.0


@dataclass
class ReconnectConfig:
    base_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    jitter_ms: int = 500


@dataclass
class PreviewConfig:
    timeout_sec: float = 6.0
    max_redirects: int = 5
    max_html_bytes: int = 120_000


@dataclass
class StorageConfig:
    data_dir: str = "~/.config/gotify-companion"
    settings_file: str = "settings.json"
    messages_file: str = "messages.json"

    def settings_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.settings_file

    def messages_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.messages_file


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    stream: StreamConfig = field(default_factory=StreamConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


ENV_PREFIX = "GOTIFY_COMPANION_"
DEFAULT_CONFIG_PATH = "config/companion.yaml"

_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "CONNECT_TIMEOUT_SEC": ("stream", "connect_timeout_sec", float),
    "SYNC_INTERVAL_SEC": ("stream", "sync_interval_sec", float),
    "LIVENESS_CHECK_INTERVAL_SEC": ("stream", "liveness_check_interval_sec", float),
    "IDLE_TIMEOUT_SEC": ("stream", "idle_timeout_sec", float),
    "PING_GRACE_SEC": ("stream", "ping_grace_sec", float),
    "REQUEST_TIMEOUT_SEC": ("stream", "request_timeout_sec", float),
    "RECONNECT_BASE_DELAY_SEC": ("reconnect", "base_delay_sec", float),
    "RECONNECT_MAX_DELAY_SEC": ("reconnect", "max_delay_sec", float),
    "RECONNECT_JITTER_MS": ("reconnect", "jitter_ms", int),
    "PREVIEW_TIMEOUT_SEC": ("preview", "timeout_sec", float),
    "PREVIEW_MAX_REDIRECTS": ("preview", "max_redirects", int),
    "PREVIEW_MAX_HTML_BYTES": ("preview", "max_html_bytes", int),
    "DATA_DIR": ("storage", "data_dir", str),
    "LOG_LEVEL": ("logging", "level", str),
}


def _apply_overrides(config: AppConfig) -> None:
    env = os.environ
    for suffix, (section, attr, parser) in _ENV_OVERRIDES.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is None or raw.strip() == "":
            continue
        setattr(getattr(config, section), attr, parser(raw.strip()))


def _merge_dataclass(dst: Any, src: dict[str, Any]) -> None:
    for key, value in src.items():
        if not hasattr(dst, key):
            continue
        current = getattr(dst, key)
        if hasattr(current, "__dataclass_fields__") and isinstance(value, dict):
            _merge_dataclass(current, value)
        else:
            setattr(dst, key, value)


def load_config(path: str | None = None) -> AppConfig:
    config = AppConfig()
    config_path = path or os.getenv(f"{ENV_PREFIX}CONFIG_PATH", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if isinstance(data, dict):
            _merge_dataclass(config, data)
    _apply_overrides(config)
    return config


def config_summary(config: AppConfig) -> dict[str, Any]:
    return {
        "connect_timeout_sec": config.stream.connect_timeout_sec,
        "sync_interval_sec": config.stream.sync_interval_sec,
        "idle_timeout_sec": config.stream.idle_timeout_sec,
        "ping_grace_sec": config.stream.ping_grace_sec,
        "reconnect_base_delay_sec": config.reconnect.base_delay_sec,
        "reconnect_max_delay_sec": config.reconnect.max_delay_sec,
        "preview_max_redirects": config.preview.max_redirects,
        "preview_max_html_bytes": config.preview.max_html_bytes,
        "data_dir": config.storage.data_dir,
        "log_level": config.logging.level,
    }
