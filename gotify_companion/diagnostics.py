from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Optional

from .models import ConnectionState


@dataclass(frozen=True)
class RuntimeDiagnostics:
    connection_state: str
    should_run: bool
    last_connected_at: Optional[int]
    last_stream_event_at: Optional[int]
    last_message_at: Optional[int]
    last_message_id: Optional[int]
    stale_for_seconds: Optional[int]
    last_error: Optional[str]
    backoff_seconds: float
    reconnect_attempts: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RuntimeState:
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    should_run: bool = False
    last_connected_at: Optional[int] = None
    last_stream_event_at: Optional[int] = None
    last_message_at: Optional[int] = None
    last_message_id: Optional[int] = None
    last_error: Optional[str] = None
    backoff_seconds: float = 0.0
    reconnect_attempts: int = 0
    pushed_stale_for_seconds: Optional[int] = None


class DiagnosticsAggregator:
    """Holds the stream's runtime record and projects snapshots from it.

    The ``mark_*`` methods are fed by the stream manager and the
    message ingestion path; ``snapshot`` never mutates anything.
    """

    def __init__(self, now_fn: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._state = RuntimeState()
        self._now_fn = now_fn

    def state(self) -> RuntimeState:
        with self._lock:
            return self._state

    def snapshot(self, now: Optional[float] = None) -> RuntimeDiagnostics:
        with self._lock:
            state = self._state
        current = int(self._now_fn() if now is None else now)
        if state.last_stream_event_at is not None:
            stale: Optional[int] = max(0, current - state.last_stream_event_at)
        else:
            stale = state.pushed_stale_for_seconds
        return RuntimeDiagnostics(
            connection_state=state.connection_state.value,
            should_run=state.should_run,
            last_connected_at=state.last_connected_at,
            last_stream_event_at=state.last_stream_event_at,
            last_message_at=state.last_message_at,
            last_message_id=state.last_message_id,
            stale_for_seconds=stale,
            last_error=state.last_error,
            backoff_seconds=state.backoff_seconds,
            reconnect_attempts=state.reconnect_attempts,
        )

    def _update(self, **changes: Any) -> RuntimeState:
        with self._lock:
            self._state = replace(self._state, **changes)
            return self._state

    def mark_state(self, state: ConnectionState) -> None:
        self._update(connection_state=state)

    def mark_started(self) -> None:
        self._update(should_run=True, last_error=None, backoff_seconds=0.0, reconnect_attempts=0)

    def mark_stopped(self) -> None:
        self._update(should_run=False, backoff_seconds=0.0)

    def mark_connected(self, at: int) -> None:
        self._update(
            last_connected_at=at,
            last_stream_event_at=at,
            last_error=None,
            backoff_seconds=0.0,
        )

    def mark_failure(self, error: str, backoff_seconds: float) -> None:
        with self._lock:
            self._state = replace(
                self._state,
                last_error=error,
                backoff_seconds=backoff_seconds,
                reconnect_attempts=self._state.reconnect_attempts + 1,
            )

    def mark_activity(self, at: int) -> None:
        self._update(last_stream_event_at=at)

    def mark_message(self, message_id: int, at: int) -> None:
        self._update(last_message_at=at, last_message_id=message_id, last_stream_event_at=at)

    def push_staleness(self, stale_for_seconds: Optional[int]) -> None:
        self._update(pushed_stale_for_seconds=stale_for_seconds)
