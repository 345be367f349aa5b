from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ProtocolError
from .utils import parse_timestamp

PAUSE_FOREVER_SENTINEL = 0


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    BACKOFF = "Backoff"


class PauseMode(str, Enum):
    FIFTEEN_MIN = "15m"
    ONE_HOUR = "1h"
    CUSTOM = "custom"
    FOREVER = "forever"


@dataclass(frozen=True)
class ApplicationMeta:
    name: str
    icon_url: str = ""


@dataclass(frozen=True)
class Message:
    id: int
    app_id: int
    title: str
    body: str
    priority: int
    app_name: str
    app_icon_url: Optional[str]
    timestamp: str

    def parsed_timestamp(self) -> Optional[float]:
        return parse_timestamp(self.timestamp)

    def same_content(self, other: "Message") -> bool:
        return self == other

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        icon = data.get("app_icon_url")
        return cls(
            id=int(data["id"]),
            app_id=int(data.get("app_id", 0)),
            title=str(data.get("title", "")),
            body=str(data.get("body", "")),
            priority=int(data.get("priority", 0)),
            app_name=str(data.get("app_name", "")),
            app_icon_url=str(icon) if icon else None,
            timestamp=str(data.get("timestamp", "")),
        )

    @classmethod
    def from_wire(
        cls,
        payload: Any,
        app_meta: Optional[Mapping[int, ApplicationMeta]] = None,
    ) -> "Message":
        """Build a message from the server's JSON shape.

        ``id``, ``appid`` and ``message`` are required; ``title``,
        ``priority`` and ``date`` fall back to empty values like the
        server's own defaults.
        """
        if not isinstance(payload, Mapping):
            raise ProtocolError(f"message payload is not an object: {type(payload).__name__}")
        message_id = _require_int(payload, "id")
        app_id = _require_int(payload, "appid")
        body = payload.get("message")
        if not isinstance(body, str):
            raise ProtocolError("message payload missing 'message' text")
        title = payload.get("title") or ""
        priority = payload.get("priority") or 0
        date = payload.get("date") or ""
        if not isinstance(title, str) or not isinstance(date, str):
            raise ProtocolError("message payload has non-text title/date")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ProtocolError("message payload has non-integer priority")

        meta = (app_meta or {}).get(app_id)
        if meta is not None:
            app_name = meta.name
            icon = meta.icon_url.strip() or None
        else:
            app_name = f"app:{app_id}"
            icon = None
        return cls(
            id=message_id,
            app_id=app_id,
            title=title,
            body=body,
            priority=max(0, priority),
            app_name=app_name,
            app_icon_url=icon,
            timestamp=date,
        )


def _require_int(payload: Mapping[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"message payload missing integer '{key}'")
    return value


@dataclass(frozen=True)
class PauseState:
    pause_until: Optional[int] = None
    pause_mode: Optional[PauseMode] = None

    @property
    def is_forever(self) -> bool:
        return self.pause_until == PAUSE_FOREVER_SENTINEL

    @property
    def is_set(self) -> bool:
        return self.pause_until is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "pause_until": self.pause_until,
            "pause_mode": self.pause_mode.value if self.pause_mode is not None else None,
        }


@dataclass(frozen=True)
class UrlPreview:
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    site_name: Optional[str] = None
    image: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
