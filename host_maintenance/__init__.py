"""
host-maintenance
----------------

Unattended maintenance for a single Linux host: OS package updates with
reboot handling, and full filesystem backups to cloud storage with
retention, both reporting by email.

This module serves as the main entry point for the package, exposing key
functionality and components.

Example:
    >>> from host_maintenance import load_config, EmailNotifier, BackupRunner
    >>> config = load_config()
    >>> runner = BackupRunner(config, EmailNotifier(config), dry_run=True)
    >>> exit_code = runner.execute()
"""

import logging

from host_maintenance.config import (
    load_config,
    ConfigurationError,
    ConfigValidationError,
    ConfigurationManager,
    DEFAULT_CONFIG
)
from host_maintenance.logger import setup_logging, LogManager, RunLogCollector
from host_maintenance.notify import (
    Notifier,
    EmailNotifier,
    Notification,
    NotificationKind,
    NotificationError
)
from host_maintenance.remote import (
    RcloneRemote,
    RemoteObject,
    RemoteError,
    RETAIN_COUNT,
    select_for_pruning
)
from host_maintenance.records import RunRecord, read_record, write_record
from host_maintenance.runners import Runner, StageFailed, BackupRunner, UpdateRunner
from host_maintenance.utils.process import RunLock, LockError, CommandError
from host_maintenance.version import __version__

# Package metadata
__title__ = "host-maintenance"
__license__ = "MIT"

logger = logging.getLogger(__name__)

__all__ = [
    # Configuration
    "load_config",
    "ConfigurationManager",
    "ConfigurationError",
    "ConfigValidationError",
    "DEFAULT_CONFIG",

    # Logging
    "setup_logging",
    "LogManager",
    "RunLogCollector",

    # Collaborators
    "Notifier",
    "EmailNotifier",
    "Notification",
    "NotificationKind",
    "NotificationError",
    "RcloneRemote",
    "RemoteObject",
    "RemoteError",
    "RETAIN_COUNT",
    "select_for_pruning",

    # Runners
    "Runner",
    "StageFailed",
    "BackupRunner",
    "UpdateRunner",

    # State
    "RunRecord",
    "read_record",
    "write_record",
    "RunLock",
    "LockError",
    "CommandError",

    # Version and metadata
    "__version__",
    "__title__",
    "__license__",
]


# Library code stays quiet until an entry point configures logging
logger.addHandler(logging.NullHandler())
