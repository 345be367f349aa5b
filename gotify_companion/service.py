from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import aiohttp

from .config import AppConfig
from .diagnostics import DiagnosticsAggregator
from .errors import SettingsError
from .events import (
    MESSAGE_RECEIVED,
    MESSAGES_UPDATED,
    NOTIFICATION_MESSAGE,
    NOTIFICATIONS_PAUSE_STATE,
    NOTIFICATIONS_PAUSED_UNTIL,
    NOTIFICATIONS_RESUMED,
    EventBus,
)
from .gotify_api import GotifyClient
from .message_cache import MessageCache, MessageCacheFile
from .models import ApplicationMeta, Message, PauseState
from .pause import PauseController
from .policy import NotificationPolicy, build_notification
from .preview import UrlPreviewFetcher
from .settings import SettingsStore, StoredSettings
from .stream import StreamManager

logger = logging.getLogger(__name__)


class CompanionService:
    """Command surface over the stream, cache, pause and policy components.

    Every state change that a UI would render goes out through ``bus``.
    """

    def __init__(
        self,
        config: AppConfig,
        bus: Optional[EventBus] = None,
        now_fn: Callable[[], float] = time.time,
        tz: Optional[ZoneInfo] = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        preview_fetcher: Optional[UrlPreviewFetcher] = None,
    ) -> None:
        self._config = config
        self._now_fn = now_fn
        self.bus = bus or EventBus()
        self.settings_store = SettingsStore(config.storage.settings_path())
        self.cache_file = MessageCacheFile(config.storage.messages_path())

        try:
            settings = self.settings_store.load()
        except SettingsError as exc:
            logger.warning("settings_load_failed using_defaults err=%s", exc)
            settings = StoredSettings()

        self.cache = MessageCache(settings.cache_limit, self.cache_file.load())
        self.pause = PauseController(settings.pause_state(), now_fn=now_fn)
        self.policy = NotificationPolicy(
            self.pause,
            min_priority=settings.min_priority,
            quiet_hours_start=settings.quiet_hours_start,
            quiet_hours_end=settings.quiet_hours_end,
            tz=tz,
            now_fn=now_fn,
        )
        self.diagnostics = DiagnosticsAggregator(now_fn)
        self.stream = StreamManager(
            config.stream,
            config.reconnect,
            self.diagnostics,
            self.bus,
            on_message=self.ingest_message,
            sync=self.sync_messages,
            app_meta=lambda: self._app_meta,
            session_factory=session_factory,
            now_fn=now_fn,
        )
        self.stream.configure(settings.base_url or None, settings.token)
        self.preview = preview_fetcher or UrlPreviewFetcher(
            timeout_sec=config.preview.timeout_sec,
            max_redirects=config.preview.max_redirects,
            max_html_bytes=config.preview.max_html_bytes,
        )

        self._client: Optional[GotifyClient] = None
        self._client_key: Optional[Tuple[str, str]] = None
        self._app_meta: Dict[int, ApplicationMeta] = {}
        self._apps_loaded = False
        self._sync_lock = asyncio.Lock()
        # Listener is attached last so restoring state above does not persist it back.
        self.pause.set_listener(self._on_pause_changed)

    # settings

    def load_settings(self) -> dict[str, Any]:
        return self.settings_store.load_public()

    async def save_settings(
        self,
        base_url: str,
        token: str = "",
        min_priority: Optional[int] = None,
        cache_limit: Optional[int] = None,
        quiet_hours_start: Optional[int] = None,
        quiet_hours_end: Optional[int] = None,
    ) -> dict[str, Any]:
        updated = self.settings_store.save_settings(
            base_url,
            token,
            min_priority=min_priority,
            cache_limit=cache_limit,
            quiet_hours_start=quiet_hours_start,
            quiet_hours_end=quiet_hours_end,
        )
        self.policy.configure(
            updated.min_priority, updated.quiet_hours_start, updated.quiet_hours_end
        )
        if self.cache.set_limit(updated.cache_limit):
            self._publish_messages(self.cache.snapshot())

        credentials_changed = self._client_key != (updated.base_url, updated.token or "")
        self.stream.configure(updated.base_url, updated.token)
        if credentials_changed:
            await self._drop_client()
        if credentials_changed and self.diagnostics.state().should_run:
            logger.info("settings_changed restarting_stream")
            await self.stream.restart()
        return updated.public_view()

    # stream

    async def start_stream(self) -> None:
        settings = self.settings_store.load()
        if not settings.has_token:
            raise SettingsError("No token found. Save token in settings first.")
        await self.stream.start(settings.base_url, settings.token)

    async def stop_stream(self) -> None:
        await self.stream.stop()

    async def restart_stream(self) -> None:
        await self.stream.restart()

    async def recover_stream(self) -> bool:
        return await self.stream.recover()

    def get_connection_state(self) -> str:
        return self.stream.state.value

    # messages

    def get_cached_messages(self, limit: Optional[int] = None) -> List[dict[str, Any]]:
        messages = self.cache.snapshot()
        if limit is not None:
            messages = messages[: max(0, limit)]
        return [message.as_dict() for message in messages]

    def ingest_message(self, message: Message) -> None:
        existed = self.cache.upsert(message)
        self.diagnostics.mark_message(message.id, int(self._now_fn()))
        self.bus.emit(MESSAGE_RECEIVED, message.as_dict())
        self._persist_cache()
        if existed:
            logger.debug("message_duplicate id=%s", message.id)
            return
        if self.policy.should_notify(message):
            self.bus.emit(NOTIFICATION_MESSAGE, asdict(build_notification(message)))

    async def sync_messages(self) -> bool:
        """Pull the newest page of messages and reconcile the cache with it."""
        async with self._sync_lock:
            client = await self._get_client()
            if not self._apps_loaded:
                self._app_meta = await client.fetch_applications()
                self._apps_loaded = True
            # Live messages may land while the page is in flight.
            known = set(self.cache.arrival_order())
            fresh = await client.fetch_recent_messages(self.cache.limit, self._app_meta)
            # Server pages are newest-first; admit oldest-first.
            result = self.cache.reconcile(reversed(fresh), known_ids=known)
            if result.changed:
                logger.info(
                    "messages_synced inserted=%s dropped=%s total=%s",
                    len(result.inserted),
                    len(result.evicted),
                    len(result.snapshot),
                )
                self._publish_messages(result.snapshot)
            return result.changed

    async def delete_message(self, message_id: int) -> None:
        client = await self._get_client()
        await client.delete_message(message_id)
        if self.cache.remove(message_id):
            self._publish_messages(self.cache.snapshot())
        try:
            await self.sync_messages()
        except Exception as exc:
            logger.warning("post_delete_sync_failed id=%s err=%s", message_id, exc)

    # pause

    def pause_notifications(self, minutes: int) -> dict[str, Any]:
        return self.pause.pause_minutes(minutes).as_dict()

    def pause_notifications_forever(self) -> dict[str, Any]:
        return self.pause.pause_forever().as_dict()

    def resume_notifications(self) -> dict[str, Any]:
        return self.pause.resume().as_dict()

    def get_pause_state(self) -> dict[str, Any]:
        now = self._now_fn()
        self.pause.expire_if_due(now)
        payload = self.pause.state(now).as_dict()
        payload["label"] = self.pause.describe(now)
        return payload

    # diagnostics / preview

    def get_runtime_diagnostics(self) -> dict[str, Any]:
        return self.diagnostics.snapshot().as_dict()

    async def fetch_url_preview(self, url: str) -> dict[str, Any]:
        preview = await self.preview.fetch(url)
        return preview.as_dict()

    async def close(self) -> None:
        await self.stream.stop()
        await self._drop_client()

    def _on_pause_changed(self, state: PauseState) -> None:
        self.settings_store.update_pause(state)
        self.bus.emit(NOTIFICATIONS_PAUSE_STATE, state.as_dict())
        if state.is_set:
            self.bus.emit(NOTIFICATIONS_PAUSED_UNTIL, state.pause_until)
        else:
            self.bus.emit(NOTIFICATIONS_RESUMED, None)

    def _publish_messages(self, snapshot: List[Message]) -> None:
        self.bus.emit(MESSAGES_UPDATED, [message.as_dict() for message in snapshot])
        self._persist_cache(snapshot)

    def _persist_cache(self, snapshot: Optional[List[Message]] = None) -> None:
        messages = snapshot if snapshot is not None else self.cache.snapshot()
        try:
            self.cache_file.save(messages)
        except OSError as exc:
            logger.warning("message_cache_save_failed path=%s err=%s", self.cache_file.path, exc)

    async def _get_client(self) -> GotifyClient:
        settings = self.settings_store.load()
        key = (settings.base_url, settings.token or "")
        if self._client is not None and self._client_key == key:
            return self._client
        await self._drop_client()
        self._client = GotifyClient(
            settings.base_url,
            settings.token or "",
            timeout_sec=self._config.stream.request_timeout_sec,
        )
        self._client_key = key
        return self._client

    async def _drop_client(self) -> None:
        client = self._client
        self._client = None
        self._client_key = None
        self._app_meta = {}
        self._apps_loaded = False
        if client is not None:
            await client.close()
