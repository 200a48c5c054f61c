"""CLI entry point for p4oc."""

from __future__ import annotations

import argparse
import logging
import queue
import sys
from pathlib import Path

from rich.console import Console
from rich.live import Live

import p4oc.io.logging_setup
import p4oc.io.settings
from p4oc.app.conversation_store import ConversationSnapshot, ConversationStore
from p4oc.app.session_runtime import SessionRuntime
from p4oc.core.diff_analysis import group_by_hunk
from p4oc.core.tool_descriptors import ToolCatalog
from p4oc.io.event_log import load_event_log
from p4oc.pipeline.event_types import parse_server_event
from p4oc.pipeline.router import QueueSubscriber
from p4oc.rendering import render_hunks, render_snapshot

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="p4oc",
        description="Watch a coding-agent server session from the terminal",
    )
    parser.add_argument(
        "--server",
        type=str,
        default=None,
        help="Server base URL (default: $P4OC_SERVER_URL, settings, or http://127.0.0.1:4096)",
    )
    parser.add_argument(
        "--session",
        type=str,
        default=None,
        help="Only show events for this session id (default: all sessions)",
    )
    parser.add_argument("--record", type=str, default=None, help="Record raw server events to a .jsonl file")
    parser.add_argument(
        "--replay",
        type=str,
        default=None,
        help="Render the final state of a recorded .jsonl event log and exit",
    )
    parser.add_argument("--diff", type=str, default=None, help="Print hunks and stats for a unified diff file and exit")
    parser.add_argument(
        "--remember",
        action="store_true",
        help="Save --server as the default server_url in the settings file",
    )
    return parser


def replay_log(path: str, session_id: str | None = None) -> ConversationSnapshot:
    """Reduce a recorded event log into its final snapshot.

    Raises:
        FileNotFoundError, ValueError: For a missing or corrupt log file.
    """
    store = ConversationStore(session_id)
    for lineno, raw in enumerate(load_event_log(path), start=1):
        try:
            event = parse_server_event(raw)
        except ValueError as e:
            logger.warning("%s: event %d skipped: %s", path, lineno, e)
            continue
        if event is not None:
            store.apply_server_event(event)
    return store.snapshot


def _run_diff(console: Console, path: str) -> int:
    try:
        diff_text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        print("p4oc: cannot read {}: {}".format(path, e), file=sys.stderr)
        return 1
    console.print(render_hunks(group_by_hunk(diff_text), diff_text))
    return 0


def _run_replay(console: Console, path: str, session_id: str | None, catalog: ToolCatalog) -> int:
    try:
        snapshot = replay_log(path, session_id)
    except (OSError, ValueError) as e:
        print("p4oc: cannot replay {}: {}".format(path, e), file=sys.stderr)
        return 1
    console.print(render_snapshot(snapshot, catalog))
    return 0


def _latest(sub: QueueSubscriber, timeout: float) -> ConversationSnapshot | None:
    """Block for one snapshot, then drain to the newest queued one."""
    try:
        snapshot = sub.queue.get(timeout=timeout)
    except queue.Empty:
        return None
    while True:
        try:
            snapshot = sub.queue.get_nowait()
        except queue.Empty:
            return snapshot


def _run_live(console: Console, args, catalog: ToolCatalog) -> int:
    server_url = args.server or p4oc.io.settings.load_server_url()
    runtime = SessionRuntime(
        server_url,
        args.session,
        reconnect_delay=p4oc.io.settings.load_reconnect_delay(),
        record_path=args.record,
    )
    display_sub = QueueSubscriber()
    unsubscribe = runtime.subscribe(display_sub.on_event)
    runtime.start()
    try:
        with Live(render_snapshot(runtime.snapshot, catalog), console=console, auto_refresh=False) as live:
            while True:
                snapshot = _latest(display_sub, timeout=0.25)
                if snapshot is not None:
                    live.update(render_snapshot(snapshot, catalog), refresh=True)
    except KeyboardInterrupt:
        pass
    finally:
        unsubscribe()
        runtime.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    live_mode = args.diff is None and args.replay is None
    p4oc.io.logging_setup.configure("p4oc", session_id=args.session or "", stderr=not live_mode)

    if args.remember:
        if args.server is None:
            print("p4oc: --remember needs --server", file=sys.stderr)
            return 2
        try:
            p4oc.io.settings.save_setting("server_url", args.server)
        except OSError as e:
            print("p4oc: cannot save settings: {}".format(e), file=sys.stderr)
            return 1
        logger.info("saved server_url %s to %s", args.server, p4oc.io.settings.get_config_path())

    console = Console()
    if args.diff is not None:
        return _run_diff(console, args.diff)

    catalog = ToolCatalog.from_settings(p4oc.io.settings.load_settings())
    if args.replay is not None:
        return _run_replay(console, args.replay, args.session, catalog)
    return _run_live(console, args, catalog)


if __name__ == "__main__":
    sys.exit(main())
