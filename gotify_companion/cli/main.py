from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, TypeVar

from gotify_companion import main as app_main
from gotify_companion.config import AppConfig, load_config
from gotify_companion.errors import CompanionError
from gotify_companion.logging_config import setup_logging
from gotify_companion.service import CompanionService

T = TypeVar("T")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _load_cli_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    if args.data_dir:
        config.storage.data_dir = args.data_dir
    if args.log_level:
        config.logging.level = args.log_level
    return config


def _build_service(args: argparse.Namespace) -> CompanionService:
    config = _load_cli_config(args)
    setup_logging(config.logging.level)
    return CompanionService(config)


def _with_service(args: argparse.Namespace, body: Callable[[CompanionService], Awaitable[T]]) -> T:
    async def runner() -> T:
        service = _build_service(args)
        try:
            return await body(service)
        finally:
            await service.close()

    return asyncio.run(runner())


def cmd_run(args: argparse.Namespace) -> int:
    asyncio.run(app_main.run(config=_load_cli_config(args)))
    return 0


def cmd_settings_show(args: argparse.Namespace) -> int:
    service = _build_service(args)
    _print_json(service.load_settings())
    return 0


def cmd_settings_set(args: argparse.Namespace) -> int:
    async def body(service: CompanionService) -> dict[str, Any]:
        return await service.save_settings(
            args.url,
            args.token,
            min_priority=args.min_priority,
            cache_limit=args.cache_limit,
            quiet_hours_start=args.quiet_start,
            quiet_hours_end=args.quiet_end,
        )

    _print_json(_with_service(args, body))
    return 0


def cmd_pause(args: argparse.Namespace) -> int:
    service = _build_service(args)
    if args.forever:
        service.pause_notifications_forever()
    else:
        service.pause_notifications(args.minutes)
    _print_json(service.get_pause_state())
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    service = _build_service(args)
    service.resume_notifications()
    _print_json(service.get_pause_state())
    return 0


def cmd_pause_status(args: argparse.Namespace) -> int:
    service = _build_service(args)
    _print_json(service.get_pause_state())
    return 0


def cmd_messages(args: argparse.Namespace) -> int:
    async def body(service: CompanionService) -> list[dict[str, Any]]:
        if args.sync:
            await service.sync_messages()
        return service.get_cached_messages(args.limit)

    _print_json(_with_service(args, body))
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    async def body(service: CompanionService) -> None:
        await service.delete_message(args.message_id)

    _with_service(args, body)
    _print_json({"deleted": args.message_id})
    return 0


def cmd_preview(args: argparse.Namespace) -> int:
    async def body(service: CompanionService) -> dict[str, Any]:
        return await service.fetch_url_preview(args.url)

    _print_json(_with_service(args, body))
    return 0


def cmd_diagnostics(args: argparse.Namespace) -> int:
    async def body(service: CompanionService) -> dict[str, Any]:
        if args.wait > 0:
            await service.start_stream()
            await asyncio.sleep(args.wait)
        return service.get_runtime_diagnostics()

    _print_json(_with_service(args, body))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gotify-companion", description="Gotify companion CLI")
    parser.add_argument("--config", default=None, help="YAML config path")
    parser.add_argument("--data-dir", default=None, help="override storage.data_dir")
    parser.add_argument("--log-level", default=None)

    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="keep the stream open until interrupted")
    p_run.set_defaults(func=cmd_run)

    p_settings = sub.add_parser("settings", help="show or change stored settings")
    settings_sub = p_settings.add_subparsers(dest="settings_command", required=True)
    p_show = settings_sub.add_parser("show", help="print settings without the token")
    p_show.set_defaults(func=cmd_settings_show)
    p_set = settings_sub.add_parser("set", help="save server settings")
    p_set.add_argument("--url", required=True)
    p_set.add_argument("--token", default="", help="empty keeps the stored token")
    p_set.add_argument("--min-priority", default=None, type=int)
    p_set.add_argument("--cache-limit", default=None, type=int)
    p_set.add_argument("--quiet-start", default=None, type=int)
    p_set.add_argument("--quiet-end", default=None, type=int)
    p_set.set_defaults(func=cmd_settings_set)

    p_pause = sub.add_parser("pause", help="pause notifications")
    group = p_pause.add_mutually_exclusive_group(required=True)
    group.add_argument("--minutes", type=int)
    group.add_argument("--forever", action="store_true")
    p_pause.set_defaults(func=cmd_pause)

    p_resume = sub.add_parser("resume", help="resume notifications")
    p_resume.set_defaults(func=cmd_resume)

    p_pause_status = sub.add_parser("pause-status", help="print the current pause state")
    p_pause_status.set_defaults(func=cmd_pause_status)

    p_messages = sub.add_parser("messages", help="print cached messages")
    p_messages.add_argument("--limit", default=None, type=int)
    p_messages.add_argument("--sync", action="store_true", help="pull from the server first")
    p_messages.set_defaults(func=cmd_messages)

    p_delete = sub.add_parser("delete", help="delete a message on the server")
    p_delete.add_argument("message_id", type=int)
    p_delete.set_defaults(func=cmd_delete)

    p_preview = sub.add_parser("preview", help="fetch link preview metadata")
    p_preview.add_argument("url")
    p_preview.set_defaults(func=cmd_preview)

    p_diag = sub.add_parser("diagnostics", help="print stream diagnostics")
    p_diag.add_argument("--wait", default=0.0, type=float, help="connect for N seconds first")
    p_diag.set_defaults(func=cmd_diagnostics)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except CompanionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
