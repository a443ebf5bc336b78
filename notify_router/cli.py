#!/usr/bin/env python3
"""
Notify Router Command Line Interface

Main entry point for the `notify-router` command. Intended for operators and
for periodic invocation (cron, systemd timers).

Usage:
    notify-router run --task all --limit 100 --auto   # periodic trigger
    notify-router run --task broadcasts               # manual expansion pass
    notify-router stats
    notify-router config show
    notify-router config set processingEnabled=false connect.blockedSenders='["u9"]'
    notify-router send nq_0123456789abcdef
    notify-router list --status failed --limit 20
    notify-router cancel-broadcast bc_0123456789abcdef
    notify-router register u1 --token ExponentPushToken[xxx] --tz-offset 330
"""

import argparse
import asyncio
import json
import sys

from notify_router import __version__
from notify_router.admin import NotificationAdmin
from notify_router.cycle import TASKS, run_cycle
from notify_router.delivery.processor import TRIGGER_AUTO, TRIGGER_MANUAL
from notify_router.logging_config import setup_logging
from notify_router.permissions import AllowAllGate
from notify_router.recipients import register_recipient

OPERATOR = "cli"


def _print(result: dict) -> int:
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success", True) else 1


def parse_assignment(text: str) -> dict:
    """
    Turn 'a.b.c=value' into {"a": {"b": {"c": value}}}.

    The value is parsed as JSON when possible (true, 3, ["x"]), otherwise
    kept as a string.
    """
    if "=" not in text:
        raise ValueError(f"Expected KEY=VALUE, got {text!r}")
    key, raw = text.split("=", 1)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw

    patch: dict = {}
    node = patch
    parts = [p for p in key.strip().split(".") if p]
    if not parts:
        raise ValueError(f"Empty key in {text!r}")
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value
    return patch


def cmd_run(args):
    """Handle run subcommand."""
    trigger = TRIGGER_AUTO if args.auto else TRIGGER_MANUAL
    return _print(asyncio.run(run_cycle(task=args.task, limit=args.limit, trigger=trigger)))


def cmd_stats(args):
    admin = NotificationAdmin(AllowAllGate())
    return _print(asyncio.run(admin.get_stats(OPERATOR)))


def cmd_config(args):
    """Handle config subcommand."""
    admin = NotificationAdmin(AllowAllGate())

    if args.config_command == "show":
        return _print(asyncio.run(admin.get_config(OPERATOR)))

    from notify_router.config import deep_merge

    patch: dict = {}
    try:
        for assignment in args.assignments:
            patch = deep_merge(patch, parse_assignment(assignment))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return _print(asyncio.run(admin.update_config(OPERATOR, patch)))


def cmd_send(args):
    admin = NotificationAdmin(AllowAllGate())
    result = asyncio.run(
        admin.send_queue_item(
            OPERATOR, args.queue_id, force=not args.no_force, bypass_checks=args.bypass_checks
        )
    )
    return _print(result)


def cmd_list(args):
    admin = NotificationAdmin(AllowAllGate())
    return _print(
        asyncio.run(admin.list_queue(OPERATOR, status=args.status, limit=args.limit, cursor=args.cursor))
    )


def cmd_cancel_broadcast(args):
    admin = NotificationAdmin(AllowAllGate())
    return _print(asyncio.run(admin.cancel_broadcast(OPERATOR, args.broadcast_id)))


def cmd_register(args):
    return _print(
        asyncio.run(
            register_recipient(args.recipient_id, delivery_token=args.token, tz_offset_minutes=args.tz_offset)
        )
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notify-router",
        description="Scheduled push notification delivery engine",
    )
    parser.add_argument("--version", action="version", version=f"notify-router {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the scheduling/fan-out/delivery cycle")
    run_parser.add_argument("--task", choices=TASKS, default="all", help="Part of the cycle to run")
    run_parser.add_argument("--limit", type=int, default=None, help="Work bound (1-500)")
    run_parser.add_argument(
        "--auto",
        action="store_true",
        help="Periodic trigger (no-op while autoCronEnabled is false)",
    )
    run_parser.set_defaults(func=cmd_run)

    stats_parser = subparsers.add_parser("stats", help="Queue counts and kill-switch summary")
    stats_parser.set_defaults(func=cmd_stats)

    config_parser = subparsers.add_parser("config", help="Show or patch the router config")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective config")
    set_parser = config_sub.add_parser("set", help="Patch config keys (KEY=VALUE, dotted keys)")
    set_parser.add_argument("assignments", nargs="+", metavar="KEY=VALUE")
    config_parser.set_defaults(func=cmd_config)

    send_parser = subparsers.add_parser("send", help="Send one queue item now")
    send_parser.add_argument("queue_id")
    send_parser.add_argument("--no-force", action="store_true", help="Only send if already due")
    send_parser.add_argument(
        "--bypass-checks",
        action="store_true",
        help="Also skip category, dedupe and cooldown checks",
    )
    send_parser.set_defaults(func=cmd_send)

    list_parser = subparsers.add_parser("list", help="List queue items")
    list_parser.add_argument(
        "--status",
        choices=["pending", "sent", "failed", "skipped", "all"],
        default="pending",
    )
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--cursor", default=None)
    list_parser.set_defaults(func=cmd_list)

    cancel_parser = subparsers.add_parser("cancel-broadcast", help="Cancel a broadcast and purge it")
    cancel_parser.add_argument("broadcast_id")
    cancel_parser.set_defaults(func=cmd_cancel_broadcast)

    register_parser = subparsers.add_parser("register", help="Add or update a recipient")
    register_parser.add_argument("recipient_id")
    register_parser.add_argument("--token", default=None, help="Delivery token")
    register_parser.add_argument("--tz-offset", type=int, default=None, help="UTC offset in minutes")
    register_parser.set_defaults(func=cmd_register)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging()
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
