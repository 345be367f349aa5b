from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from .config import ReconnectConfig, StreamConfig
from .diagnostics import DiagnosticsAggregator
from .errors import ProtocolError, SettingsError, TransportError
from .events import CONNECTION_ERROR, CONNECTION_STATE, RUNTIME_DIAGNOSTICS, EventBus
from .gotify_api import AUTH_HEADER
from .models import ApplicationMeta, ConnectionState, Message
from .settings import build_stream_ws_url
from .utils import ExponentialBackoff, redact_url, truncate_message

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_CHARS = 300
CONNECTION_ERROR_MAX_CHARS = 200
PAYLOAD_LOG_MAX_CHARS = 140


class StreamManager:
    """Keeps one websocket session to the server's ``/stream`` endpoint.

    States: Disconnected -> Connecting -> Connected, with Backoff between
    failed attempts. Transport failures never escape the run loop; only
    ``stop`` ends it.
    """

    def __init__(
        self,
        stream_config: StreamConfig,
        reconnect_config: ReconnectConfig,
        diagnostics: DiagnosticsAggregator,
        bus: EventBus,
        on_message: Callable[[Message], None],
        sync: Optional[Callable[[], Awaitable[None]]] = None,
        app_meta: Optional[Callable[[], Mapping[int, ApplicationMeta]]] = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self._config = stream_config
        self._reconnect = reconnect_config
        self._diagnostics = diagnostics
        self._bus = bus
        self._on_message = on_message
        self._sync = sync
        self._app_meta = app_meta or dict
        self._session_factory = session_factory
        self._now_fn = now_fn

        self._control_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._epoch = 0
        self._state = ConnectionState.DISCONNECTED
        self._base_url: Optional[str] = None
        self._token: Optional[str] = None
        self._last_activity_monotonic = 0.0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(self, base_url: Optional[str], token: Optional[str]) -> None:
        self._base_url = base_url
        self._token = token

    async def start(self, base_url: Optional[str] = None, token: Optional[str] = None) -> None:
        async with self._control_lock:
            await self._start_locked(base_url, token)

    async def stop(self) -> None:
        async with self._control_lock:
            await self._stop_locked()

    async def restart(self) -> None:
        async with self._control_lock:
            await self._stop_locked()
            await self._start_locked(None, None)

    async def recover(self) -> bool:
        """Reconnect only when the stream should run but is not healthy."""
        async with self._control_lock:
            if not self._diagnostics.state().should_run:
                return False
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                return False
            logger.info("stream_recover state=%s", self._state.value)
            await self._stop_locked()
            await self._start_locked(None, None)
            return True

    async def _start_locked(self, base_url: Optional[str], token: Optional[str]) -> None:
        if base_url:
            self._base_url = base_url
        if token and token.strip():
            self._token = token.strip()
        if not self._base_url:
            raise SettingsError("Server URL is required")
        if not self._token:
            raise SettingsError("No token found. Save token in settings first.")
        ws_url = build_stream_ws_url(self._base_url)

        if self.is_running():
            return

        self._epoch += 1
        epoch = self._epoch
        self._stop_event = asyncio.Event()
        self._diagnostics.mark_started()
        self._set_state(ConnectionState.CONNECTING, epoch)
        logger.info("stream_start url=%s epoch=%s", redact_url(ws_url), epoch)
        self._task = asyncio.create_task(
            self._run(ws_url, self._token, self._stop_event, epoch),
            name=f"gotify-stream-{epoch}",
        )

    async def _stop_locked(self) -> None:
        task = self._task
        self._task = None
        self._stop_event.set()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._diagnostics.mark_stopped()
        self._set_state(ConnectionState.DISCONNECTED, self._epoch)

    async def _run(
        self,
        ws_url: str,
        token: str,
        stop_event: asyncio.Event,
        epoch: int,
    ) -> None:
        backoff = ExponentialBackoff(
            self._reconnect.base_delay_sec,
            self._reconnect.max_delay_sec,
            jitter_sec=self._reconnect.jitter_ms / 1000.0,
        )
        try:
            async with self._session_factory() as session:
                while not stop_event.is_set():
                    self._set_state(ConnectionState.CONNECTING, epoch)
                    try:
                        await self._stream_once(session, ws_url, token, stop_event, epoch, backoff)
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        if stop_event.is_set():
                            break
                        delay = backoff.next_delay()
                        error_text = str(exc) or type(exc).__name__
                        logger.warning(
                            "stream_error err=%s attempt=%s retry_in=%.2fs",
                            error_text,
                            backoff.attempts,
                            delay,
                        )
                        if epoch == self._epoch:
                            self._diagnostics.mark_failure(
                                truncate_message(error_text, LAST_ERROR_MAX_CHARS), round(delay, 3)
                            )
                        self._set_state(ConnectionState.BACKOFF, epoch)
                        if epoch == self._epoch:
                            self._bus.emit(
                                CONNECTION_ERROR,
                                truncate_message(error_text, CONNECTION_ERROR_MAX_CHARS),
                            )
                        await self._sleep_with_stop(delay, stop_event)
        finally:
            if epoch == self._epoch:
                self._diagnostics.mark_stopped()
                self._set_state(ConnectionState.DISCONNECTED, epoch)
            logger.info("stream_task_exit epoch=%s", epoch)

    async def _stream_once(
        self,
        session: aiohttp.ClientSession,
        ws_url: str,
        token: str,
        stop_event: asyncio.Event,
        epoch: int,
        backoff: ExponentialBackoff,
    ) -> None:
        ws = await self._connect(session, ws_url, token)
        now = int(self._now_fn())
        self._last_activity_monotonic = asyncio.get_running_loop().time()
        backoff.reset()
        if epoch == self._epoch:
            self._diagnostics.mark_connected(now)
        self._set_state(ConnectionState.CONNECTED, epoch)
        logger.info("stream_connected url=%s", redact_url(ws_url))

        reader_task = asyncio.create_task(self._read_loop(ws, epoch))
        liveness_task = asyncio.create_task(self._liveness_loop(ws, epoch))
        stop_task = asyncio.create_task(stop_event.wait())
        sync_task: Optional[asyncio.Task] = None
        if self._sync is not None:
            sync_task = asyncio.create_task(self._sync_loop())
        tasks = {reader_task, liveness_task, stop_task}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if stop_task in done:
                return
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    raise exc
            raise TransportError("Stream ended unexpectedly")
        finally:
            for task in (reader_task, liveness_task, stop_task, sync_task):
                if task is not None:
                    task.cancel()
            for task in (reader_task, liveness_task, stop_task, sync_task):
                if task is not None:
                    await asyncio.gather(task, return_exceptions=True)
            try:
                await ws.close()
            except Exception:
                logger.debug("stream_close_failed", exc_info=True)

    async def _connect(
        self, session: aiohttp.ClientSession, ws_url: str, token: str
    ) -> aiohttp.ClientWebSocketResponse:
        async def _open() -> aiohttp.ClientWebSocketResponse:
            return await session.ws_connect(
                ws_url,
                headers={AUTH_HEADER: token},
                autoping=False,
                heartbeat=None,
            )

        logger.debug("stream_connecting url=%s", redact_url(ws_url))
        try:
            return await asyncio.wait_for(_open(), timeout=self._config.connect_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"Stream connection timed out after {self._config.connect_timeout_sec:g} seconds"
            ) from exc
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in (401, 403):
                raise TransportError(f"Stream rejected credentials (HTTP {exc.status})") from exc
            raise TransportError(f"Stream connection failed: HTTP {exc.status} {exc.message}") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"Stream connection failed: {exc}") from exc

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, epoch: int) -> None:
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._mark_activity(epoch)
                self._handle_text(msg.data)
            elif msg.type == aiohttp.WSMsgType.PING:
                self._mark_activity(epoch)
                try:
                    await ws.pong(msg.data)
                except (ConnectionError, RuntimeError) as exc:
                    raise TransportError(f"Failed to send pong: {exc}") from exc
            elif msg.type in (aiohttp.WSMsgType.PONG, aiohttp.WSMsgType.BINARY):
                self._mark_activity(epoch)
            elif msg.type == aiohttp.WSMsgType.CLOSE:
                raise TransportError("Stream closed by server")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"Stream read error: {ws.exception()}")
            else:
                raise TransportError("Stream ended unexpectedly")

    def _handle_text(self, data: str) -> None:
        try:
            payload: Any = json.loads(data)
            message = Message.from_wire(payload, self._app_meta())
        except (ValueError, ProtocolError) as exc:
            logger.warning(
                "stream_payload_rejected err=%s payload=%s",
                exc,
                truncate_message(data, PAYLOAD_LOG_MAX_CHARS),
            )
            return
        logger.debug("stream_message id=%s", message.id)
        try:
            self._on_message(message)
        except Exception:
            logger.exception("stream_message_handler_failed id=%s", message.id)

    async def _liveness_loop(self, ws: aiohttp.ClientWebSocketResponse, epoch: int) -> None:
        loop = asyncio.get_running_loop()
        pending_ping_since: Optional[float] = None
        while True:
            await asyncio.sleep(self._config.liveness_check_interval_sec)
            now = loop.time()
            idle = now - self._last_activity_monotonic
            if epoch == self._epoch:
                # Monotonic fallback for snapshots taken without an event stamp.
                self._diagnostics.push_staleness(int(idle))
            if idle < self._config.idle_timeout_sec:
                pending_ping_since = None
                self._emit_diagnostics(epoch)
                continue
            if pending_ping_since is None:
                logger.info("stream_liveness_ping idle_sec=%.1f", idle)
                try:
                    await ws.ping()
                except (ConnectionError, RuntimeError) as exc:
                    raise TransportError(f"Failed to send liveness ping: {exc}") from exc
                pending_ping_since = now
            elif now - pending_ping_since >= self._config.ping_grace_sec:
                raise TransportError(f"Stream liveness timeout after {int(idle)}s idle")
            self._emit_diagnostics(epoch)

    async def _sync_loop(self) -> None:
        assert self._sync is not None
        while True:
            try:
                await self._sync()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("periodic_sync_failed err=%s", exc)
            await asyncio.sleep(self._config.sync_interval_sec)

    def _mark_activity(self, epoch: int) -> None:
        self._last_activity_monotonic = asyncio.get_running_loop().time()
        if epoch == self._epoch:
            self._diagnostics.mark_activity(int(self._now_fn()))

    def _set_state(self, state: ConnectionState, epoch: int) -> None:
        if epoch != self._epoch:
            return
        changed = state != self._state
        self._state = state
        self._diagnostics.mark_state(state)
        if changed:
            logger.info("connection_state state=%s", state.value)
            self._bus.emit(CONNECTION_STATE, state.value)
        self._emit_diagnostics(epoch)

    def _emit_diagnostics(self, epoch: int) -> None:
        if epoch != self._epoch:
            return
        self._bus.emit(RUNTIME_DIAGNOSTICS, self._diagnostics.snapshot().as_dict())

    @staticmethod
    async def _sleep_with_stop(delay: float, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return
