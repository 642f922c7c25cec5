"""
claude-pings command line.

Commands:
    watch   Tail the trigger file and print each PID as it arrives.
    stats   Summarize the engagement statistics document.

Usage:
    claude-pings watch [--trigger PATH] [--record [--stats PATH]]
    claude-pings stats [--stats PATH] [--json]
"""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import sys
import time
from pathlib import Path
from typing import Sequence

from claude_pings.paths import stats_file_path, trigger_file_path
from claude_pings.stats import StatsStore
from claude_pings.watcher import DEFAULT_POLL_INTERVAL, TriggerWatcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-pings",
        description="Trigger-file watcher and alert engagement statistics.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    watch_parser = subparsers.add_parser("watch", help="Print PIDs appended to the trigger file")
    watch_parser.add_argument("--trigger", type=Path, default=None, help="Trigger file to tail")
    watch_parser.add_argument("--stats", type=Path, default=None, help="Stats file used with --record")
    watch_parser.add_argument("--record", action="store_true", help="Record every PID as an alert")
    watch_parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Polling interval in seconds",
    )

    stats_parser = subparsers.add_parser("stats", help="Show engagement statistics")
    stats_parser.add_argument("--stats", type=Path, default=None, help="Stats file to read")
    stats_parser.add_argument("--json", action="store_true", help="Print the raw document")
    return parser


def run_watch(args: argparse.Namespace) -> int:
    store = StatsStore(args.stats or stats_file_path()) if args.record else None
    sequence = itertools.count(1)

    def on_trigger(pid: int) -> None:
        print(f"pid {pid}", flush=True)
        if store is not None:
            store.record_alert(f"pid-{pid}-{next(sequence)}")

    watcher = TriggerWatcher(args.trigger or trigger_file_path(), on_trigger, poll_interval=args.interval)
    if not watcher.start():
        return EXIT_ERROR
    logger.info("Watching %s (Ctrl+C to stop)", watcher.path)
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    finally:
        watcher.close()
        if store is not None:
            store.close()


def format_summary(store: StatsStore) -> str:
    today = store.today_stats
    data = store.stats
    average = store.average_response_time()
    lines = [
        f"Today:         {today.alert_count if today else 0} alerts, "
        f"{today.clicked_count if today else 0} clicked, "
        f"{today.dismissed_count if today else 0} dismissed",
        f"Avg response:  {f'{average:.1f}s' if average is not None else '-'}",
        f"This week:     {store.this_week_alerts} alerts",
        f"Streak:        {store.streak_days} days",
        f"All time:      {data.all_time_alerts} alerts, "
        f"{data.all_time_clicks} clicks, {data.all_time_dismisses} dismisses",
        "Last 7 days:   " + " ".join(f"{label}:{count}" for label, count in store.last_7_days),
    ]
    if data.first_used is not None:
        lines.append(f"First used:    {data.first_used.astimezone().strftime('%Y-%m-%d %H:%M')}")
    return "\n".join(lines)


def run_stats(args: argparse.Namespace) -> int:
    with StatsStore(args.stats or stats_file_path()) as store:
        if args.json:
            print(json.dumps(store.stats.to_dict(), sort_keys=True, indent=2))
        else:
            print(format_summary(store))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "watch":
        return run_watch(args)
    if args.command == "stats":
        return run_stats(args)

    parser.print_help()
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
