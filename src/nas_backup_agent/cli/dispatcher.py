"""CLI dispatcher: argument parsing and routing to subcommands."""

import argparse
import sys
from typing import Callable

from .common import add_verbosity_args


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="nas-backup-agent",
        description="Image and file backups of this machine to a network share",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the configured backup job",
        description="Capture partitions or folders to the configured share",
    )
    run_parser.add_argument(
        "--kind",
        choices=["image", "files"],
        help="Backup kind (overrides config)",
    )
    run_parser.add_argument(
        "--path",
        metavar="PATH",
        action="append",
        help="Source folder for file backups, repeatable (overrides config)",
    )
    run_parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not show a progress bar",
    )

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show recent job history",
        description="Display the outcome of recent backup jobs",
    )
    status_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=10,
        metavar="N",
        help="Number of jobs to show (default: 10)",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    # disks command
    disks_parser = subparsers.add_parser(
        "disks",
        help="Show disks and partitions",
        description="Enumerate disks and show which partitions an image backup captures",
    )
    disks_parser.add_argument(
        "--json",
        action="store_true",
        help="Output the raw metadata as JSON",
    )

    # config command with subcommands
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate, initialize, or show configuration",
    )
    config_subs = config_parser.add_subparsers(dest="config_action")

    config_subs.add_parser(
        "validate",
        help="Validate configuration file",
    )

    init_parser = config_subs.add_parser(
        "init",
        help="Generate example configuration",
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )

    config_subs.add_parser(
        "show",
        help="Show the effective configuration (password hidden)",
    )

    # worker command, started by the supervisor only
    worker_parser = subparsers.add_parser(
        "worker",
        help=argparse.SUPPRESS,
    )
    worker_parser.add_argument(
        "--job",
        metavar="FILE",
        required=True,
        help="Job file written by the supervisor",
    )

    return parser


def run_subcommand(args: argparse.Namespace) -> int:
    """Run the specified subcommand.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from .. import __version__

    if args.version:
        print(f"nas-backup-agent {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return 1

    # Route to appropriate command handler
    handlers: dict[str, Callable] = {
        "run": cmd_run,
        "status": cmd_status,
        "disks": cmd_disks,
        "config": cmd_config,
        "worker": cmd_worker,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """Execute run command."""
    from .run import execute_run

    return execute_run(args)


def cmd_status(args: argparse.Namespace) -> int:
    """Execute status command."""
    from .status import execute_status

    return execute_status(args)


def cmd_disks(args: argparse.Namespace) -> int:
    """Execute disks command."""
    from .disks import execute_disks

    return execute_disks(args)


def cmd_config(args: argparse.Namespace) -> int:
    """Execute config command."""
    from .config_cmd import execute_config

    return execute_config(args)


def cmd_worker(args: argparse.Namespace) -> int:
    """Execute worker command."""
    from ..worker.main import run_worker

    return run_worker(args.job)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for nas-backup-agent CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)

    return run_subcommand(args)
