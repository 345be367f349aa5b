from __future__ import annotations

import itertools
import json
import logging
import os
import threading
import urllib.parse
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

from .errors import SettingsError
from .models import PauseMode, PauseState

logger = logging.getLogger(__name__)

DEFAULT_CACHE_LIMIT = 100
MAX_CACHE_LIMIT = 2000
MAX_MIN_PRIORITY = 10

_TMP_COUNTER = itertools.count(1)


def normalize_cache_limit(limit: int) -> int:
    return min(max(int(limit), 1), MAX_CACHE_LIMIT)


def normalize_min_priority(value: int) -> int:
    return min(max(int(value), 0), MAX_MIN_PRIORITY)


def normalize_quiet_hour(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return int(value) % 24


def normalize_base_url(value: str) -> str:
    trimmed = (value or "").strip().rstrip("/")
    if not trimmed:
        raise SettingsError("Server URL is required")
    try:
        parts = urllib.parse.urlsplit(trimmed)
    except ValueError as exc:
        raise SettingsError(f"Invalid server URL: {exc}") from exc
    if parts.scheme not in ("http", "https"):
        raise SettingsError("Server URL must start with http:// or https://")
    if not parts.netloc:
        raise SettingsError("Invalid server URL: missing host")
    return trimmed


def build_stream_ws_url(base_url: str) -> str:
    parts = urllib.parse.urlsplit(normalize_base_url(base_url))
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/stream"
    return urllib.parse.urlunsplit((scheme, parts.netloc, path, parts.query, ""))


@dataclass(frozen=True)
class StoredSettings:
    base_url: str = ""
    token: Optional[str] = None
    min_priority: int = 0
    cache_limit: int = DEFAULT_CACHE_LIMIT
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    pause_until: Optional[int] = None
    pause_mode: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token and self.token.strip())

    def pause_state(self) -> PauseState:
        mode: Optional[PauseMode] = None
        if self.pause_mode:
            try:
                mode = PauseMode(self.pause_mode)
            except ValueError:
                logger.warning("settings_unknown_pause_mode value=%s", self.pause_mode)
        return PauseState(pause_until=self.pause_until, pause_mode=mode)

    def with_pause(self, state: PauseState) -> "StoredSettings":
        return replace(
            self,
            pause_until=state.pause_until,
            pause_mode=state.pause_mode.value if state.pause_mode is not None else None,
        )

    def public_view(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("token")
        data["has_token"] = self.has_token
        data["cache_limit"] = normalize_cache_limit(self.cache_limit)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredSettings":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


class SettingsStore:
    """JSON file holding the user's settings, token included."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoredSettings:
        with self._lock:
            return self._load_locked()

    def save(self, settings: StoredSettings) -> None:
        with self._lock:
            self._save_locked(settings)

    def load_public(self) -> dict[str, Any]:
        return self.load().public_view()

    def update_pause(self, state: PauseState) -> StoredSettings:
        with self._lock:
            updated = self._load_locked().with_pause(state)
            self._save_locked(updated)
            return updated

    def save_settings(
        self,
        base_url: str,
        token: str = "",
        min_priority: Optional[int] = None,
        cache_limit: Optional[int] = None,
        quiet_hours_start: Optional[int] = None,
        quiet_hours_end: Optional[int] = None,
    ) -> StoredSettings:
        normalized_url = normalize_base_url(base_url)
        with self._lock:
            try:
                current = self._load_locked()
            except SettingsError:
                logger.warning("settings_unreadable_on_save path=%s", self._path)
                current = StoredSettings()

            if token and token.strip():
                new_token: Optional[str] = token.strip()
            elif current.has_token:
                new_token = current.token
            else:
                raise SettingsError("Token is required")

            updated = StoredSettings(
                base_url=normalized_url,
                token=new_token,
                min_priority=normalize_min_priority(
                    current.min_priority if min_priority is None else min_priority
                ),
                cache_limit=normalize_cache_limit(
                    current.cache_limit if cache_limit is None else cache_limit
                ),
                quiet_hours_start=normalize_quiet_hour(
                    current.quiet_hours_start if quiet_hours_start is None else quiet_hours_start
                ),
                quiet_hours_end=normalize_quiet_hour(
                    current.quiet_hours_end if quiet_hours_end is None else quiet_hours_end
                ),
                pause_until=current.pause_until,
                pause_mode=current.pause_mode,
            )
            self._save_locked(updated)
        logger.info(
            "settings_saved base_url=%s token_len=%s min_priority=%s cache_limit=%s",
            updated.base_url,
            len(updated.token or ""),
            updated.min_priority,
            updated.cache_limit,
        )
        return updated

    def _load_locked(self) -> StoredSettings:
        if not self._path.exists():
            return StoredSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SettingsError(f"Failed to read settings: {exc}") from exc
        if not isinstance(data, dict):
            raise SettingsError("Failed to parse settings: expected an object")
        try:
            return StoredSettings.from_dict(data)
        except TypeError as exc:
            raise SettingsError(f"Failed to parse settings: {exc}") from exc

    def _save_locked(self, settings: StoredSettings) -> None:
        write_json_atomic(self._path, asdict(settings))


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp-{os.getpid()}-{next(_TMP_COUNTER)}")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    try:
        os.chmod(tmp_path, 0o600)
    except OSError:
        logger.warning("restrict_permissions_failed path=%s", tmp_path)
    os.replace(tmp_path, path)
