"""CLI entry point for ccmetrics.

Usage:
    python -m ccmetrics <command> [options]

Commands:
    hook session-start|status-tick|session-end   (payload JSON on stdin)
    enrichment refresh
    queue status
    queue drain [--limit N]
    config validate
    config get <key>
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import NoReturn

from ccmetrics import __version__
from ccmetrics.config import Config, ConfigError
from ccmetrics.events import HookEvent, HookPayload, parse_stdin
from ccmetrics.logs import setup_logging
from ccmetrics.orchestrator import Orchestrator

logger = logging.getLogger("ccmetrics.cli")

HOOK_TAGS = {
    HookEvent.SESSION_START: "SESSION_START",
    HookEvent.STATUS_TICK: "STATUSLINE",
    HookEvent.SESSION_END: "SESSION_END",
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ccmetrics",
        description="Session metrics pipeline for AI coding assistants",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # hook command
    hook_parser = subparsers.add_parser(
        "hook", help="Handle a host lifecycle event (payload on stdin)"
    )
    hook_parser.add_argument(
        "event",
        choices=[event.value for event in HookEvent],
        help="Lifecycle event",
    )

    # enrichment command
    enrichment_parser = subparsers.add_parser(
        "enrichment", help="Usage and account enrichment"
    )
    enrichment_subparsers = enrichment_parser.add_subparsers(
        dest="enrichment_command", help="Enrichment subcommands"
    )
    enrichment_subparsers.add_parser(
        "refresh", help="Refresh the shared enrichment cache if stale"
    )

    # queue command
    queue_parser = subparsers.add_parser("queue", help="Retry queue management")
    queue_subparsers = queue_parser.add_subparsers(
        dest="queue_command", help="Queue subcommands"
    )
    queue_subparsers.add_parser("status", help="Show queued submission count")
    drain_parser = queue_subparsers.add_parser("drain", help="Resend queued submissions")
    drain_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum submissions to attempt (default: queue.drain_batch)",
    )

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )
    config_subparsers.add_parser("validate", help="Validate configuration")
    get_parser = config_subparsers.add_parser("get", help="Get a config value")
    get_parser.add_argument("key", help="Config key (e.g. store.table)")

    return parser


def cmd_hook(args: argparse.Namespace) -> int:
    """Handle 'hook <event>' command.

    Exits 0 on everything except missing configuration, so a failure here
    never breaks the host.
    """
    event = HookEvent(args.event)

    try:
        config = Config.load_or_default()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_file, config.debug, HOOK_TAGS[event])
    payload = HookPayload() if event is HookEvent.SESSION_START else parse_stdin()
    logger.debug(f"raw stdin: {payload.raw}")

    try:
        with Orchestrator(config) as orchestrator:
            if event is HookEvent.SESSION_START:
                orchestrator.on_session_start()
            elif event is HookEvent.STATUS_TICK:
                print(orchestrator.on_status_tick(payload))
            else:
                orchestrator.on_session_end(payload)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except Exception:
        logger.exception(f"Unhandled error in {event.value} hook")
    return 0


def cmd_enrichment_refresh(args: argparse.Namespace) -> int:
    """Handle 'enrichment refresh' command."""
    try:
        config = Config.load_or_default()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_file, config.debug, "ENRICHMENT")
    try:
        with Orchestrator(config) as orchestrator:
            orchestrator.refresh_enrichment()
    except Exception:
        logger.exception("Enrichment refresh failed")
    return 0


def cmd_queue_status(args: argparse.Namespace) -> int:
    """Handle 'queue status' command."""
    try:
        config = Config.load_or_default()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    with Orchestrator(config) as orchestrator:
        count = orchestrator.queue.count()
    print(f"Queued submissions: {count} (max {config.queue.max_size})")
    print(f"  Queue directory: {config.queue_dir}")
    return 0


def cmd_queue_drain(args: argparse.Namespace) -> int:
    """Handle 'queue drain' command."""
    try:
        config = Config.load_or_default()
        setup_logging(config.log_file, config.debug, "CLI")
        with Orchestrator(config) as orchestrator:
            result = orchestrator.drain_queue(args.limit)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    print(f"Sent {result.sent}, {result.remaining} remaining")
    if result.stopped_on_failure:
        print("Stopped at first failure; remote store still unreachable", file=sys.stderr)
        return 1
    return 0


def cmd_config_get(args: argparse.Namespace) -> int:
    """Handle 'config get' command."""
    try:
        config = Config.load_or_default()
        value = config.get_value(args.key)
        print(value)
        return 0
    except KeyError:
        print(f"Error: Config key not found: {args.key}", file=sys.stderr)
        return 1
    except ConfigError as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    try:
        config = Config.load()
        config.store.validate()
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 1
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    print(f"Configuration valid: {config.config_path}")
    print(f"  Developer: {config.developer}")
    print(f"  Store: {config.store.endpoint}")
    status = "enabled" if config.enrichment.enabled else "disabled"
    print(f"  Enrichment: {status}")
    print(f"  State directory: {config.state_dir}")
    return 0


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "hook":
        sys.exit(cmd_hook(args))
    elif args.command == "enrichment":
        if args.enrichment_command == "refresh":
            sys.exit(cmd_enrichment_refresh(args))
        else:
            parser.parse_args(["enrichment", "--help"])
            sys.exit(1)
    elif args.command == "queue":
        if args.queue_command == "status":
            sys.exit(cmd_queue_status(args))
        elif args.queue_command == "drain":
            sys.exit(cmd_queue_drain(args))
        else:
            parser.parse_args(["queue", "--help"])
            sys.exit(1)
    elif args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        elif args.config_command == "get":
            sys.exit(cmd_config_get(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
