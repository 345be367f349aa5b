from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Optional

from .config import AppConfig, config_summary, load_config
from .errors import SettingsError
from .events import EventBus
from .logging_config import setup_logging
from .service import CompanionService

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())


def _log_event(name: str, payload: Any) -> None:
    logger.info("event name=%s payload=%s", name, payload)


async def run(
    config_path: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
    config: Optional[AppConfig] = None,
) -> None:
    if config is None:
        config = load_config(config_path)
    setup_logging(config.logging.level)
    logger.info("config %s", config_summary(config))

    bus = EventBus()
    subscription = bus.subscribe(EventBus.WILDCARD, _log_event)
    service = CompanionService(config, bus=bus)

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    try:
        try:
            await service.start_stream()
        except SettingsError as exc:
            logger.warning("stream_not_started err=%s", exc)

        await stop_event.wait()
        logger.info("shutdown signal received")
    finally:
        await service.close()
        subscription.close()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
