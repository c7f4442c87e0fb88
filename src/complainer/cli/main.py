"""
Main CLI entry point for complainer.

This module provides the main command-line interface with subcommands
for running the monitor and inspecting cluster failures.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from complainer import __version__


def create_parser() -> argparse.ArgumentParser:
    """
    Create the main argument parser with all subcommands.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="complainer",
        description="Report failed Mesos tasks to chat, webhooks, email and files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  complainer init                               Write a starter complainer.yaml
  complainer run --masters http://m1:5050       Watch the cluster and report failures
  complainer run --once                         Do a single poll and exit
  complainer failures --format json             List failed tasks on the leader
  complainer resolve --reporter slack \\
      --label complainer_slack_instances=a,b    Show label-resolved settings

For more information on a command, run: complainer <command> --help
""",
    )

    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"complainer {__version__}",
    )

    # Global options
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Path to config file (default: ./complainer.yaml)",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to config logging.level.",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write logs to a file instead of stderr",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # init
    init_parser = subparsers.add_parser(
        "init",
        help="Write a starter configuration file",
        description="Create complainer.yaml with default settings.",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing configuration",
    )

    # run
    run_parser = subparsers.add_parser(
        "run",
        help="Watch the cluster and report failed tasks",
        description="Poll the Mesos leader and route new failures to reporters.",
    )
    _add_cluster_arguments(run_parser)
    run_parser.add_argument(
        "--name",
        metavar="NAME",
        help="Complainer name used to namespace task labels (default: default)",
    )
    run_parser.add_argument(
        "--reporters",
        metavar="NAMES",
        help="Comma-separated reporters to enable (default: all configured)",
    )
    run_parser.add_argument(
        "--uploader",
        metavar="TYPE",
        help="Uploader to use (noop, s3)",
    )
    run_parser.add_argument(
        "--listen",
        metavar="ADDR",
        help="Health check listen address, e.g. :8080 (falls back to $PORT)",
    )
    run_parser.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Seconds between polls (default: 5)",
    )
    run_parser.add_argument(
        "--no-default",
        action="store_true",
        help="Do not route failures to implicit default reporter instances",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll and exit",
    )

    # failures
    failures_parser = subparsers.add_parser(
        "failures",
        help="List failed tasks known to the leader",
        description="Read the leading master once and print failed tasks.",
    )
    _add_cluster_arguments(failures_parser)
    failures_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )

    # resolve
    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Show reporter instances and settings resolved from labels",
        description="Resolve label-based reporter configuration for a label set.",
    )
    resolve_parser.add_argument(
        "--name",
        metavar="NAME",
        help="Complainer name (default: config name)",
    )
    resolve_parser.add_argument(
        "--reporter",
        action="append",
        required=True,
        metavar="NAME",
        help="Reporter name to resolve (repeatable)",
    )
    resolve_parser.add_argument(
        "--label",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Task label (repeatable)",
    )
    resolve_parser.add_argument(
        "--key",
        action="append",
        default=[],
        metavar="KEY",
        help="Setting key to resolve for each instance (repeatable)",
    )
    resolve_parser.add_argument(
        "--no-default",
        action="store_true",
        help="Resolve without implicit default instances",
    )

    return parser


def _add_cluster_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--masters",
        metavar="URLS",
        help="Comma-separated Mesos master URLs: http://host:port,http://host:port",
    )
    parser.add_argument(
        "--allow",
        action="append",
        metavar="REGEX",
        help="Only report frameworks matching this regex (repeatable)",
    )
    parser.add_argument(
        "--deny",
        action="append",
        metavar="REGEX",
        help="Never report frameworks matching this regex (repeatable)",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    from complainer.cli import commands

    try:
        if args.command == "init":
            return commands.cmd_init(args)

        elif args.command == "run":
            return commands.cmd_run(args)

        elif args.command == "failures":
            return commands.cmd_failures(args)

        elif args.command == "resolve":
            return commands.cmd_resolve(args)

        else:
            parser.print_help()
            return 1

    except KeyboardInterrupt:
        print("\nAborted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
