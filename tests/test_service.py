import asyncio
import json
from zoneinfo import ZoneInfo

import pytest

import gotify_companion.service as service_module
from gotify_companion.config import AppConfig
from gotify_companion.errors import RemoteRequestError, SettingsError
from gotify_companion.events import (
    MESSAGE_RECEIVED,
    MESSAGES_UPDATED,
    NOTIFICATION_MESSAGE,
    NOTIFICATIONS_PAUSE_STATE,
    NOTIFICATIONS_PAUSED_UNTIL,
    NOTIFICATIONS_RESUMED,
    EventBus,
)
from gotify_companion.models import ApplicationMeta, Message
from gotify_companion.service import CompanionService


def make_message(message_id: int, priority: int = 5) -> Message:
    return Message(
        id=message_id,
        app_id=1,
        title=f"t{message_id}",
        body=f"body {message_id}",
        priority=priority,
        app_name="Backups",
        app_icon_url=None,
        timestamp=f"2024-01-01T00:00:{message_id:02d}Z",
    )


class FakeClient:
    server_messages = []
    deleted = []
    fail_delete = False
    instances = 0
    on_fetch = None

    def __init__(self, base_url, token, session=None, timeout_sec=15.0):
        FakeClient.instances += 1
        self.base_url = base_url
        self.token = token

    async def close(self):
        return None

    async def fetch_applications(self):
        return {1: ApplicationMeta(name="Backups")}

    async def fetch_recent_messages(self, limit, app_meta=None):
        page = sorted(FakeClient.server_messages, key=lambda m: m.id, reverse=True)[:limit]
        if FakeClient.on_fetch is not None:
            FakeClient.on_fetch()
        return page

    async def delete_message(self, message_id):
        if FakeClient.fail_delete:
            raise RemoteRequestError("Delete failed (HTTP 500): boom", status=500)
        FakeClient.deleted.append(message_id)
        FakeClient.server_messages = [m for m in FakeClient.server_messages if m.id != message_id]
        return 200


class Recorder:
    def __init__(self, bus: EventBus) -> None:
        self.events = []
        bus.subscribe(EventBus.WILDCARD, lambda name, payload: self.events.append((name, payload)))

    def named(self, name):
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.server_messages = []
    FakeClient.deleted = []
    FakeClient.fail_delete = False
    FakeClient.instances = 0
    FakeClient.on_fetch = None
    monkeypatch.setattr(service_module, "GotifyClient", FakeClient)
    return FakeClient


def build_service(tmp_path, now=1_700_000_000.0):
    config = AppConfig()
    config.storage.data_dir = str(tmp_path)
    bus = EventBus()
    recorder = Recorder(bus)
    service = CompanionService(config, bus=bus, now_fn=lambda: now, tz=ZoneInfo("UTC"))
    return service, recorder


def test_new_message_notifies_once_and_persists(tmp_path):
    service, recorder = build_service(tmp_path)

    service.ingest_message(make_message(1))
    service.ingest_message(make_message(1))

    assert len(recorder.named(MESSAGE_RECEIVED)) == 2
    notifications = recorder.named(NOTIFICATION_MESSAGE)
    assert len(notifications) == 1
    assert notifications[0]["title"] == "Backups · Priority 5"
    stored = json.loads((tmp_path / "messages.json").read_text(encoding="utf-8"))
    assert [item["id"] for item in stored] == [1]
    assert service.get_runtime_diagnostics()["last_message_id"] == 1


def test_pause_suppresses_notifications_and_persists(tmp_path):
    service, recorder = build_service(tmp_path)
    asyncio.run(service.save_settings("https://gotify.example", "secret"))

    state = service.pause_notifications(15)
    assert state["pause_mode"] == "15m"
    service.ingest_message(make_message(2, priority=10))
    assert recorder.named(NOTIFICATION_MESSAGE) == []
    assert recorder.named(NOTIFICATIONS_PAUSE_STATE)[-1] == state
    assert recorder.named(NOTIFICATIONS_PAUSED_UNTIL) == [state["pause_until"]]

    restored, _ = build_service(tmp_path)
    assert restored.get_pause_state()["pause_until"] == state["pause_until"]

    service.resume_notifications()
    assert recorder.named(NOTIFICATIONS_RESUMED) == [None]
    assert service.load_settings()["pause_until"] is None


def test_expired_pause_is_cleared_on_read(tmp_path):
    service, _ = build_service(tmp_path, now=1_000.0)
    asyncio.run(service.save_settings("https://gotify.example", "secret"))
    service.pause_notifications(1)

    later, recorder = build_service(tmp_path, now=2_000.0)
    state = later.get_pause_state()
    assert state["pause_until"] is None
    assert state["label"] == "Notifications: On"
    assert recorder.named(NOTIFICATIONS_RESUMED) == [None]
    assert later.load_settings()["pause_until"] is None


def test_forever_pause_label(tmp_path):
    service, _ = build_service(tmp_path)
    asyncio.run(service.save_settings("https://gotify.example", "secret"))
    service.pause_notifications_forever()
    assert service.get_pause_state() == {
        "pause_until": 0,
        "pause_mode": "forever",
        "label": "Notifications: Paused Forever",
    }
    with pytest.raises(SettingsError):
        service.pause_notifications(0)


def test_sync_reconciles_cache_with_server(tmp_path, fake_client):
    service, recorder = build_service(tmp_path)
    asyncio.run(service.save_settings("https://gotify.example", "secret", cache_limit=3))
    service.ingest_message(make_message(1))
    fake_client.server_messages = [make_message(i) for i in range(2, 7)]

    changed = asyncio.run(service.sync_messages())
    assert changed is True
    assert [m["id"] for m in service.get_cached_messages()] == [6, 5, 4]
    assert [m["id"] for m in recorder.named(MESSAGES_UPDATED)[-1]] == [6, 5, 4]

    assert asyncio.run(service.sync_messages()) is False
    assert [m["id"] for m in service.get_cached_messages(limit=2)] == [6, 5]


def test_sync_keeps_live_message_that_arrives_mid_fetch(tmp_path, fake_client):
    service, recorder = build_service(tmp_path)
    asyncio.run(service.save_settings("https://gotify.example", "secret"))
    service.ingest_message(make_message(1))
    fake_client.server_messages = [make_message(1)]
    fake_client.on_fetch = lambda: service.ingest_message(make_message(2))

    asyncio.run(service.sync_messages())
    assert [m["id"] for m in service.get_cached_messages()] == [2, 1]
    assert [n["message_id"] for n in recorder.named(NOTIFICATION_MESSAGE)] == [1, 2]


def test_delete_removes_after_server_confirms(tmp_path, fake_client):
    service, _ = build_service(tmp_path)
    asyncio.run(service.save_settings("https://gotify.example", "secret"))
    fake_client.server_messages = [make_message(1), make_message(2)]
    asyncio.run(service.sync_messages())

    asyncio.run(service.delete_message(2))
    assert fake_client.deleted == [2]
    assert [m["id"] for m in service.get_cached_messages()] == [1]

    fake_client.fail_delete = True
    with pytest.raises(RemoteRequestError):
        asyncio.run(service.delete_message(1))
    assert [m["id"] for m in service.get_cached_messages()] == [1]


def test_save_settings_reconfigures_policy(tmp_path):
    service, recorder = build_service(tmp_path)
    public = asyncio.run(
        service.save_settings("https://gotify.example/", "secret", min_priority=7)
    )
    assert public["has_token"] is True
    assert "token" not in public

    service.ingest_message(make_message(3, priority=6))
    service.ingest_message(make_message(4, priority=7))
    assert [n["message_id"] for n in recorder.named(NOTIFICATION_MESSAGE)] == [4]


def test_start_stream_without_token_fails(tmp_path):
    service, _ = build_service(tmp_path)
    with pytest.raises(SettingsError):
        asyncio.run(service.start_stream())
    assert service.get_connection_state() == "Disconnected"
