"""
host-maintenance Utilities Package
----------------------------------

This package provides helpers used by both runners: external command
execution, privilege prefixes, run locks, and psutil/requests based system
probes.

Example:
    >>> from host_maintenance.utils import RunLock, run_command
    >>> with RunLock('backup', '/run/lock'):
    ...     run_command(['true'], check=True)
"""

import logging

from .process import (
    ProcessError,
    CommandError,
    LockError,
    RunLock,
    run_command,
    privileged,
    as_user,
    current_user,
    require_commands,
    get_process_info
)
from .system import (
    check_network,
    disk_usage_percent,
    free_space_kb,
    format_size,
    health_snapshot,
    last_package_installs
)

logger = logging.getLogger(__name__)

__all__ = [
    # Exceptions
    'ProcessError',
    'CommandError',
    'LockError',

    # Command execution
    'run_command',
    'privileged',
    'as_user',
    'current_user',
    'require_commands',

    # Locking
    'RunLock',
    'get_process_info',

    # System probes
    'check_network',
    'disk_usage_percent',
    'free_space_kb',
    'format_size',
    'health_snapshot',
    'last_package_installs',
]
