#!/usr/bin/env python3

"""
host-maintenance - Command Line Entry Points
--------------------------------------------

This module provides the console scripts of the package:

- ``host-backup``: full filesystem backup to the cloud remote
- ``host-update``: OS package update with reboot handling
- ``host-maintenance``: last run status and example configuration
"""

import os
import sys
import argparse
from typing import NoReturn, Dict, Any, List, Optional

from host_maintenance.version import __version__
from host_maintenance.config import load_config, ConfigurationError, ConfigurationManager
from host_maintenance.logger import LogManager, setup_logging
from host_maintenance.notify import EmailNotifier
from host_maintenance.records import read_record
from host_maintenance.runners import BackupRunner, UpdateRunner, RUNNERS


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument(
        '-c', '--config',
        help='Path to configuration file',
        type=str,
        default=None
    )

    debug_group = parser.add_argument_group('Debugging')
    debug_group.add_argument(
        '--debug',
        help='Enable debug logging',
        action='store_true'
    )

    misc_group = parser.add_argument_group('Miscellaneous')
    misc_group.add_argument(
        '--version',
        action='version',
        version=f"%(prog)s {__version__}"
    )


def parse_backup_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse host-backup command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='host-backup',
        description='Back up the filesystem to cloud storage and prune old copies'
    )
    mode_group = parser.add_argument_group('Operation Modes')
    mode_group.add_argument(
        '-d', '--dry-run',
        help='Log every step without changing local or remote state',
        action='store_true'
    )
    _add_common_arguments(parser)
    return parser.parse_args(argv)


def parse_update_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse host-update command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='host-update',
        description='Update OS packages, reboot when required and report by email'
    )
    _add_common_arguments(parser)
    return parser.parse_args(argv)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse host-maintenance command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='host-maintenance',
        description='host-maintenance status and configuration helper'
    )
    mode_group = parser.add_argument_group('Operation Modes')
    mode_group.add_argument(
        '--status',
        help='Show the outcome of the last backup and update runs',
        action='store_true'
    )
    mode_group.add_argument(
        '--generate-config',
        help='Write an example configuration file to PATH',
        metavar='PATH',
        default=None
    )
    _add_common_arguments(parser)
    return parser.parse_args(argv)


def _load(args: argparse.Namespace) -> Dict[str, Any]:
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)
    if args.debug:
        config['LOG_LEVEL'] = 'DEBUG'
    return config


def _start_logging(config: Dict[str, Any], log_key: str, rotate: bool = False) -> LogManager:
    try:
        return setup_logging(config, log_file=config[log_key], rotate_on_start=rotate)
    except OSError as e:
        print(f"Error opening log file {config[log_key]}: {e}", file=sys.stderr)
        sys.exit(1)


def main_backup(argv: Optional[List[str]] = None) -> NoReturn:
    """Entry point for host-backup."""
    args = parse_backup_arguments(argv)
    config = _load(args)
    log_manager = _start_logging(config, 'BACKUP_LOG_FILE')

    notifier = EmailNotifier(config, run_log=log_manager.collector)
    runner = BackupRunner(config, notifier, dry_run=args.dry_run)
    sys.exit(runner.execute())


def main_update(argv: Optional[List[str]] = None) -> NoReturn:
    """Entry point for host-update."""
    args = parse_update_arguments(argv)
    if os.geteuid() != 0:
        print("This script must be run as root", file=sys.stderr)
        sys.exit(1)

    config = _load(args)
    log_manager = _start_logging(config, 'UPDATE_LOG_FILE', rotate=True)

    notifier = EmailNotifier(config, run_log=log_manager.collector)
    runner = UpdateRunner(config, notifier)
    sys.exit(runner.execute())


def format_status(config: Dict[str, Any]) -> str:
    lines = []
    for name in RUNNERS:
        record = read_record(config['STATE_DIR'], name)
        if record is None:
            lines.append(f"{name}: no run recorded")
            continue
        line = f"{name}: {record.status} (started {record.started}, finished {record.finished})"
        if record.artifact_size:
            line += f", artifact {record.artifact_size}"
        lines.append(line)
        if record.message:
            lines.append(f"  {record.message}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Entry point for host-maintenance."""
    args = parse_arguments(argv)

    if args.generate_config:
        try:
            ConfigurationManager().generate_example_config(args.generate_config)
        except ConfigurationError as e:
            print(str(e), file=sys.stderr)
            sys.exit(1)
        print(f"Example configuration written to {args.generate_config}")
        sys.exit(0)

    config = _load(args)
    setup_logging(config)

    if args.status:
        print(format_status(config))
        sys.exit(0)

    parse_arguments(['--help'])


if __name__ == "__main__":
    main()
