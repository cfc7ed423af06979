"""
Command-line entry point for the supervisor.

Usage:
    nodekeeper-supervisor --config config/settings.yaml
    nodekeeper-supervisor -- python -m nodekeeper.worker --config config/settings.yaml

    # Or in background:
    nohup nodekeeper-supervisor > logs/supervisor.out 2>&1 &
"""

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import Optional

import structlog
from dotenv import load_dotenv

from nodekeeper.config import DEFAULT_CONFIG_PATH, load_settings
from nodekeeper.errors import ConfigurationError
from nodekeeper.logging_setup import setup_logging
from nodewatch.daemon import ProcessSupervisor
from nodewatch.journal import SupervisorJournal


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="nodekeeper - worker process supervisor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The supervisor restarts the worker when it crashes, pauses after too many
restarts inside the reset window, and exits 0 when the worker exits 0 or
when it receives SIGINT/SIGTERM.

Examples:
    # Command from config/settings.yaml (supervisor.command)
    nodekeeper-supervisor

    # Explicit command
    nodekeeper-supervisor -- python -m nodekeeper.worker
        """,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to YAML settings",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Supervisor journal path (overrides supervisor.log_file)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Child command (after --) overriding supervisor.command",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv()

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        setup_logging("INFO")
        structlog.get_logger(__name__).error("invalid_configuration", error=str(e))
        return 1

    setup_logging(args.log_level or settings.log_level)
    logger = structlog.get_logger(__name__)

    supervisor_settings = settings.supervisor
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if command:
        supervisor_settings = replace(supervisor_settings, command=tuple(command))
    if args.log_file:
        supervisor_settings = replace(supervisor_settings, log_file=args.log_file)

    try:
        supervisor = ProcessSupervisor(
            supervisor_settings,
            journal=SupervisorJournal(supervisor_settings.log_file),
        )
        return asyncio.run(supervisor.run())
    except ConfigurationError as e:
        logger.error("invalid_configuration", error=str(e))
        return 1
    except Exception as e:
        logger.exception("supervisor_crashed", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
