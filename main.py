#!/usr/bin/env python3
"""
main.py – Plugin Auto-Updater CLI
=================================
Entry point: keeps the plugins listed in ``list.yml`` up to date and rolls
back updates that break the server.

Commands:
  update [NAME...]   update every enabled entry, or only the named ones
  list [PAGE]        show the list file
  add NAME LINK      add an entry
  remove NAME        remove an entry
  enable NAME        re-enable a disabled entry
  disable NAME       disable an entry (kept in the file with a leading #)
  rollback           replay rollbacks that could not be applied earlier
  monitor LOGFILE    tail a server log (or ``-`` for stdin) and roll back
                     plugins that fail to load
  watch              run updates every ``updates.interval_minutes``
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import List

from rich.console import Console
from rich.table import Table

# ──────────────────────────────────────────────
#  Logging
# ──────────────────────────────────────────────

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(LOG_DIR / "updater.log", encoding="utf-8"),
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger("plugin_auto_updater")


# ──────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────

def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Plugin Auto-Updater – keeps server plugins current",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--config", default="config.json", help="Path to config.json")
    p.add_argument("--list-file", default=None, help="List file override")
    p.add_argument("--platform", default=None, help="Server platform override")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    update = sub.add_parser("update", help="Update plugins")
    update.add_argument("names", nargs="*", help="Only update these entries")

    lst = sub.add_parser("list", help="Show list entries")
    lst.add_argument("page", nargs="?", type=int, default=1)

    add = sub.add_parser("add", help="Add an entry")
    add.add_argument("name")
    add.add_argument("link")

    for command in ("remove", "enable", "disable"):
        cmd = sub.add_parser(command, help=f"{command.capitalize()} an entry")
        cmd.add_argument("name")

    sub.add_parser("rollback", help="Replay pending rollbacks")

    monitor = sub.add_parser("monitor", help="Watch a server log for load failures")
    monitor.add_argument("logfile", help="Log file to tail, or - for stdin")

    sub.add_parser("watch", help="Run updates on the configured interval")
    return p.parse_args(argv)


# ──────────────────────────────────────────────
#  Commands
# ──────────────────────────────────────────────

def cmd_update(updater, args: argparse.Namespace) -> int:
    links = None
    if args.names:
        links = {}
        for name in args.names:
            entry = updater.plugin_list.get(name)
            if entry is None:
                logger.warning("%s is not in %s", name, updater.plugin_list.path)
                continue
            links[name] = entry.link
        if not links:
            return 1

    results = asyncio.run(updater.run_batch(links))
    if results is None:
        return 1
    return 0 if all(r.success for r in results.values()) else 2


def cmd_list(updater, args: argparse.Namespace) -> int:
    console = Console()
    entries, pages = updater.plugin_list.page(args.page)
    if not entries:
        console.print("[yellow]No plugins listed.[/] Add one with: add <name> <link>")
        return 0

    t = Table(title=f"Plugins (page {min(max(1, args.page), pages)}/{pages})")
    t.add_column("#", style="dim", justify="right")
    t.add_column("Name", style="cyan")
    t.add_column("Link", style="white", overflow="fold")
    t.add_column("Status")
    for entry in entries:
        status = "[green]enabled[/]" if entry.enabled else "[red]disabled[/]"
        t.add_row(str(entry.line_no), entry.name, entry.link, status)
    console.print(t)
    return 0


def cmd_add(updater, args: argparse.Namespace) -> int:
    try:
        return 0 if updater.plugin_list.add(args.name, args.link) else 1
    except ValueError as exc:
        logger.error("%s", exc)
        return 1


def cmd_toggle(updater, args: argparse.Namespace) -> int:
    plugin_list = updater.plugin_list
    if args.command == "remove":
        changed = plugin_list.remove(args.name)
    else:
        changed = plugin_list.set_enabled(args.name, args.command == "enable")
    if not changed:
        logger.warning("Nothing to %s for %s", args.command, args.name)
    return 0 if changed else 1


def cmd_rollback(updater, args: argparse.Namespace) -> int:
    remaining = updater.rollback.process_pending()
    logger.info("%d pending rollback(s) remaining", remaining)
    return 0 if remaining == 0 else 2


def cmd_monitor(updater, args: argparse.Namespace) -> int:
    from rollback_manager import RollbackMonitor

    if not updater.rollback.enabled:
        logger.error("Rollback is disabled; set rollback.enabled in %s", args.config)
        return 1

    monitor = RollbackMonitor(updater.rollback)
    stop = threading.Event()
    logger.info("Monitoring %s for plugin load failures (Ctrl+C to stop)",
                "stdin" if args.logfile == "-" else args.logfile)
    try:
        if args.logfile == "-":
            monitor.watch_stream(sys.stdin.buffer).join()
        else:
            monitor.follow_file(args.logfile, stop)
    except KeyboardInterrupt:
        stop.set()
    except OSError as exc:
        logger.error("Cannot read %s: %s", args.logfile, exc)
        return 1
    finally:
        monitor.join(timeout=5)
        monitor.close()
    return 0


def cmd_watch(updater, args: argparse.Namespace) -> int:
    interval = updater.settings.interval_minutes
    if interval <= 0:
        logger.error("updates.interval_minutes is not set in %s", args.config)
        return 1

    # The scheduler is picked on first use, inside the running loop here.
    async def _watch() -> None:
        await updater.run_batch()
        updater.schedule(interval)
        await asyncio.Event().wait()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        logger.info("Stopped")
    return 0


COMMANDS = {
    "update": cmd_update,
    "list": cmd_list,
    "add": cmd_add,
    "remove": cmd_toggle,
    "enable": cmd_toggle,
    "disable": cmd_toggle,
    "rollback": cmd_rollback,
    "monitor": cmd_monitor,
    "watch": cmd_watch,
}


# ──────────────────────────────────────────────
#  Entry Point
# ──────────────────────────────────────────────

def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    from plugin_updater import PluginUpdater
    from settings import load_settings

    settings = load_settings(args.config)
    if args.list_file:
        settings.list_file = Path(args.list_file)
    if args.platform:
        settings.platform = args.platform.lower()

    updater = PluginUpdater(settings)
    if args.command in ("update", "watch"):
        updater.startup()
    return COMMANDS[args.command](updater, args)


if __name__ == "__main__":
    sys.exit(main())
