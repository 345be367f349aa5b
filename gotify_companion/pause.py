from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from .errors import SettingsError
from .models import PAUSE_FOREVER_SENTINEL, PauseMode, PauseState

logger = logging.getLogger(__name__)


def mode_for_minutes(minutes: int) -> PauseMode:
    if minutes == 15:
        return PauseMode.FIFTEEN_MIN
    if minutes == 60:
        return PauseMode.ONE_HOUR
    return PauseMode.CUSTOM


def format_remaining(total_seconds: float) -> str:
    seconds = max(1, int(total_seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours, rem_minutes = divmod(minutes, 60)
    if rem_minutes == 0:
        return f"{hours}h"
    return f"{hours}h {rem_minutes}m"


class PauseController:
    """Suppression windows for notifications.

    ``pause_until`` is an epoch second, or ``PAUSE_FOREVER_SENTINEL``
    for an open-ended pause. Timed pauses expire lazily: every read
    compares against the clock, no resume call is needed.
    """

    def __init__(
        self,
        state: Optional[PauseState] = None,
        now_fn: Callable[[], float] = time.time,
        on_change: Optional[Callable[[PauseState], None]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._state = state or PauseState()
        self._now_fn = now_fn
        self._on_change = on_change

    def set_listener(self, on_change: Optional[Callable[[PauseState], None]]) -> None:
        self._on_change = on_change

    def pause(self, duration_sec: float, mode: Optional[PauseMode] = None) -> PauseState:
        if duration_sec <= 0:
            raise SettingsError("Pause duration must be greater than 0")
        now = self._now_fn()
        until = int(math.ceil(now + duration_sec))
        tag = mode if mode is not None else mode_for_minutes(int(duration_sec // 60))
        return self._set(PauseState(pause_until=until, pause_mode=tag))

    def pause_minutes(self, minutes: int) -> PauseState:
        if minutes <= 0:
            raise SettingsError("Pause duration must be greater than 0 minutes")
        return self.pause(minutes * 60, mode_for_minutes(minutes))

    def pause_forever(self) -> PauseState:
        return self._set(PauseState(pause_until=PAUSE_FOREVER_SENTINEL, pause_mode=PauseMode.FOREVER))

    def resume(self) -> PauseState:
        return self._set(PauseState())

    def is_paused(self, now: Optional[float] = None) -> bool:
        with self._lock:
            state = self._state
        return _active(state, self._now(now))

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds left; ``None`` for a forever pause, 0 when not paused."""
        with self._lock:
            state = self._state
        current = self._now(now)
        if state.is_forever:
            return None
        if not _active(state, current):
            return 0.0
        return float(state.pause_until) - current

    def state(self, now: Optional[float] = None) -> PauseState:
        with self._lock:
            state = self._state
        if state.is_set and not _active(state, self._now(now)):
            return PauseState()
        return state

    def raw_state(self) -> PauseState:
        with self._lock:
            return self._state

    def expire_if_due(self, now: Optional[float] = None) -> bool:
        with self._lock:
            state = self._state
            if not state.is_set or _active(state, self._now(now)):
                return False
        logger.info("pause_expired pause_until=%s", state.pause_until)
        self._set(PauseState())
        return True

    def describe(self, now: Optional[float] = None) -> str:
        current = self._now(now)
        state = self.state(current)
        if state.is_forever:
            return "Notifications: Paused Forever"
        if state.is_set:
            return f"Notifications: Paused {format_remaining(state.pause_until - current)} left"
        return "Notifications: On"

    def _now(self, now: Optional[float]) -> float:
        return self._now_fn() if now is None else now

    def _set(self, state: PauseState) -> PauseState:
        with self._lock:
            self._state = state
            listener = self._on_change
        logger.info("pause_state_changed %s", state.as_dict())
        if listener is not None:
            listener(state)
        return state


def _active(state: PauseState, now: float) -> bool:
    if state.pause_until is None:
        return False
    if state.pause_until == PAUSE_FOREVER_SENTINEL:
        return True
    return state.pause_until > now
