"""Command-line host for the settings reconciler and the event stream."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Sequence

import aiohttp

from .config import reload_cfg, resolve_client_options
from .credentials import EnvTokenProvider, StaticTokenProvider, TokenProvider
from .event_stream import (
    ConfigurationChanged,
    EventStreamClient,
    MemoryUpdate,
    MessageUpdate,
    ReloadableUpdate,
    ScanLibraryStatus,
    ServerEvent,
)
from .notifications import LoggingNotifier
from .settings_reconciler import ConfigReconciler, SaveOutcome
from .sse import EventSourceTransport

log = logging.getLogger("ums_admin.console")


def _configure_logging(level: str, *, dev_mode: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if dev_mode else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not dev_mode:
        for name in ("aiohttp.access", "aiohttp.client", "aiohttp.internal"):
            logging.getLogger(name).setLevel(logging.WARNING)


def parse_assignment(raw: str) -> tuple[str, Any]:
    """Split ``KEY=VALUE``; the value is JSON when it parses, else the raw text."""
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"expected KEY=VALUE, got {raw!r}")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def wire_configuration_updates(client: EventStreamClient, reconciler: ConfigReconciler) -> None:
    def _on_event(event: ServerEvent) -> None:
        if isinstance(event, ConfigurationChanged):
            reconciler.apply_remote_update(event.values)

    client.add_listener(_on_event)


def describe_event(event: ServerEvent) -> str | None:
    if isinstance(event, MemoryUpdate):
        return f"memory: used={event.used} buffer={event.buffer} max={event.max}"
    if isinstance(event, MessageUpdate):
        return f"message: {event.message}"
    if isinstance(event, ReloadableUpdate):
        return f"reloadable: {'yes' if event.value else 'no'}"
    if isinstance(event, ScanLibraryStatus):
        return f"library scan: enabled={event.enabled} running={event.running}"
    if isinstance(event, ConfigurationChanged):
        return "settings changed: " + ", ".join(sorted(event.values))
    return None


def _token_provider(args: argparse.Namespace, options: Dict[str, Any]) -> TokenProvider:
    if args.token:
        return StaticTokenProvider(args.token)
    return EnvTokenProvider(options["token_env"], fallback=options["token"])


def _build_reconciler(
    session: aiohttp.ClientSession,
    options: Dict[str, Any],
    token_provider: TokenProvider,
) -> ConfigReconciler:
    return ConfigReconciler(
        session,
        base_url=options["base_url"],
        defaults=options["settings_defaults"],
        notifier=LoggingNotifier(),
        token_provider=token_provider,
        settings_path=options["settings_path"],
        request_timeout=options["request_timeout"],
    )


async def _cmd_show(args: argparse.Namespace, options: Dict[str, Any], tokens: TokenProvider) -> int:
    async with aiohttp.ClientSession() as session:
        reconciler = _build_reconciler(session, options, tokens)
        try:
            configuration = await reconciler.init()
        finally:
            reconciler.dispose()
    if args.json:
        print(json.dumps(configuration, indent=2, sort_keys=True, ensure_ascii=False))
    else:
        for key in sorted(configuration):
            print(f"{key} = {json.dumps(configuration[key], ensure_ascii=False)}")
    return 0 if reconciler.loaded else 1


async def _cmd_set(args: argparse.Namespace, options: Dict[str, Any], tokens: TokenProvider) -> int:
    try:
        edits = dict(parse_assignment(item) for item in args.assignments)
    except ValueError as exc:
        log.error("%s", exc)
        return 2

    async with aiohttp.ClientSession() as session:
        reconciler = _build_reconciler(session, options, tokens)
        try:
            await reconciler.init()
            if not reconciler.loaded:
                return 1
            try:
                reconciler.update_draft(edits)
            except KeyError as exc:
                log.error("Refusing to save: %s", exc.args[0] if exc.args else exc)
                return 1
            outcome = await reconciler.save()
        finally:
            reconciler.dispose()
    return 1 if outcome is SaveOutcome.FAILED else 0


async def _cmd_watch(args: argparse.Namespace, options: Dict[str, Any], tokens: TokenProvider) -> int:
    async with aiohttp.ClientSession() as session:
        transport = EventSourceTransport(
            session,
            retry_delay=options["retry_delay"],
            max_retry_delay=options["max_retry_delay"],
            read_timeout=options["read_timeout"],
        )
        client = EventStreamClient(
            transport,
            url=options["base_url"] + "/" + options["events_path"].lstrip("/"),
            token_provider=tokens,
            notifier=LoggingNotifier(),
            event_name=options["event_name"],
        )

        reconciler: ConfigReconciler | None = None
        if args.track_settings:
            reconciler = _build_reconciler(session, options, tokens)
            await reconciler.init()
            wire_configuration_updates(client, reconciler)

        def _print_event(event: ServerEvent) -> None:
            line = describe_event(event)
            if line:
                print(line, flush=True)

        client.add_listener(_print_event)
        client.start()
        try:
            if args.duration and args.duration > 0:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            await client.dispose()
            if reconciler is not None:
                reconciler.dispose()
        log.info("Event stream closed (last state: %s)", client.state.value)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Universal Media Server settings client.")
    parser.add_argument("--url", help="Server base URL (defaults to config).")
    parser.add_argument("--token", help="Bearer token (defaults to the configured env variable).")
    parser.add_argument("--log-level", help="Python logging level (defaults to config).")
    sub = parser.add_subparsers(dest="cmd", required=True)

    s_show = sub.add_parser("show", help="Print the reconciled settings")
    s_show.add_argument("--json", action="store_true", help="Print as a JSON document")

    s_set = sub.add_parser("set", help="Change settings and save the difference")
    s_set.add_argument("assignments", nargs="+", metavar="KEY=VALUE")

    s_watch = sub.add_parser("watch", help="Follow live server events")
    s_watch.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (default: run until Ctrl-C)")
    s_watch.add_argument(
        "--track-settings",
        action="store_true",
        help="Load settings and apply changes pushed by the server",
    )
    return parser


_COMMANDS = {
    "show": _cmd_show,
    "set": _cmd_set,
    "watch": _cmd_watch,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    options = resolve_client_options(reload_cfg())
    if args.url:
        options["base_url"] = args.url.rstrip("/")
    _configure_logging(args.log_level or options["log_level"], dev_mode=options["dev_mode"])

    handler = _COMMANDS[args.cmd]
    try:
        return asyncio.run(handler(args, options, _token_provider(args, options)))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
