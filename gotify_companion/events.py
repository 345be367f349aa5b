from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CONNECTION_STATE = "connection-state"
CONNECTION_ERROR = "connection-error"
MESSAGE_RECEIVED = "message-received"
MESSAGES_UPDATED = "messages-updated"
RUNTIME_DIAGNOSTICS = "runtime-diagnostics"
NOTIFICATIONS_PAUSE_STATE = "notifications-pause-state"
NOTIFICATIONS_PAUSED_UNTIL = "notifications-paused-until"
NOTIFICATIONS_RESUMED = "notifications-resumed"
NOTIFICATION_MESSAGE = "notification-message"

Handler = Callable[[str, Any], None]

_MISSING = object()


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`.

    Closing is idempotent; using the handle as a context manager
    guarantees the handler is detached on every exit path.
    """

    def __init__(self, bus: "EventBus", name: str, handler: Handler) -> None:
        self._bus = bus
        self._name = name
        self._handler = handler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._detach(self._name, self._handler)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    WILDCARD = "*"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._last: Dict[str, Any] = {}

    def subscribe(self, name: str, handler: Handler) -> Subscription:
        with self._lock:
            self._handlers[name].append(handler)
        return Subscription(self, name, handler)

    def emit(self, name: str, payload: Any = None) -> None:
        with self._lock:
            self._last[name] = payload
            handlers = list(self._handlers.get(name, ())) + list(
                self._handlers.get(self.WILDCARD, ())
            )
        for handler in handlers:
            try:
                handler(name, payload)
            except Exception:
                logger.exception("event_handler_failed event=%s", name)

    def last(self, name: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            value = self._last.get(name, _MISSING)
        return default if value is _MISSING else value

    def handler_count(self, name: str) -> int:
        with self._lock:
            return len(self._handlers.get(name, ()))

    def _detach(self, name: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(name)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                del self._handlers[name]
