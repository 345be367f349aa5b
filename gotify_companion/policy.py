from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .models import Message
from .pause import PauseController
from .utils import local_hour, truncate_message

logger = logging.getLogger(__name__)

NOTIFICATION_BODY_MAX_CHARS = 220


def is_quiet_hour(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """Half-open ``[start, end)`` check that wraps past midnight.

    A missing bound disables quiet hours; ``start == end`` covers the
    whole day.
    """
    if start is None or end is None:
        return False
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


@dataclass(frozen=True)
class Notification:
    message_id: int
    title: str
    subtitle: str
    body: str
    priority: int
    icon_url: Optional[str]


def build_notification(message: Message) -> Notification:
    app_name = message.app_name.strip()
    title = f"{app_name} · Priority {message.priority}" if app_name else f"Priority {message.priority}"
    subtitle = message.title if message.title.strip() else "Gotify message"
    return Notification(
        message_id=message.id,
        title=title,
        subtitle=subtitle,
        body=truncate_message(message.body, NOTIFICATION_BODY_MAX_CHARS),
        priority=message.priority,
        icon_url=message.app_icon_url,
    )


class NotificationPolicy:
    def __init__(
        self,
        pause: PauseController,
        min_priority: int = 0,
        quiet_hours_start: Optional[int] = None,
        quiet_hours_end: Optional[int] = None,
        tz: Optional[ZoneInfo] = None,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self._pause = pause
        self.min_priority = min_priority
        self.quiet_hours_start = quiet_hours_start
        self.quiet_hours_end = quiet_hours_end
        self._tz = tz
        self._now_fn = now_fn

    def configure(
        self,
        min_priority: int,
        quiet_hours_start: Optional[int],
        quiet_hours_end: Optional[int],
    ) -> None:
        self.min_priority = min_priority
        self.quiet_hours_start = quiet_hours_start
        self.quiet_hours_end = quiet_hours_end

    def in_quiet_hours(self, now: float) -> bool:
        return is_quiet_hour(
            local_hour(now, self._tz), self.quiet_hours_start, self.quiet_hours_end
        )

    def should_notify(self, message: Message, now: Optional[float] = None) -> bool:
        current = self._now_fn() if now is None else now
        if message.priority < self.min_priority:
            return False
        if self._pause.is_paused(current):
            return False
        if self.in_quiet_hours(current):
            logger.debug("notify_suppressed reason=quiet_hours id=%s", message.id)
            return False
        return True
