"""
System probes for host-maintenance.

Disk, memory and uptime figures come from psutil; the connectivity probe is
an HTTP request so it exercises DNS and the route to the package mirror.
"""

import math
import time
import logging
from datetime import datetime
from typing import List

import psutil
import requests

logger = logging.getLogger(__name__)

NO_INSTALLS_MESSAGE = "No recent package installations found"


def disk_usage_percent(path: str = '/') -> float:
    """Used space of the filesystem holding ``path``, in percent."""
    return psutil.disk_usage(path).percent


def free_space_kb(path: str = '/') -> int:
    """Space available to unprivileged users, in kilobytes (``df`` Available)."""
    return psutil.disk_usage(path).free // 1024


def format_size(num_bytes: float) -> str:
    """
    Format a byte count the way ``du -h`` does, rounding up.

    Examples:
        >>> format_size(512)
        '512'
        >>> format_size(1536)
        '1.5K'
        >>> format_size(1025)
        '1.1K'
        >>> format_size(3 * 1024 ** 3)
        '3.0G'
    """
    size = float(num_bytes)
    if size < 1024:
        return str(int(size))
    for unit in ('K', 'M', 'G', 'T', 'P'):
        size /= 1024
        if size < 10:
            shown = math.ceil(size * 10) / 10
            if shown < 10:
                return f"{shown:.1f}{unit}"
            return f"10{unit}"
        shown = math.ceil(size)
        if shown < 1024 or unit == 'P':
            return f"{shown}{unit}"


def format_uptime(seconds: float) -> str:
    minutes, _ = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return "up " + ", ".join(parts)


def last_package_installs(dpkg_log: str, count: int = 5) -> List[str]:
    """Return the last ``count`` install lines of the dpkg log."""
    try:
        with open(dpkg_log, 'r', errors='replace') as f:
            installs = [line.rstrip('\n') for line in f if 'install ' in line]
    except OSError as e:
        logger.debug(f"Cannot read {dpkg_log}: {e}")
        return []
    return installs[-count:]


def health_snapshot(dpkg_log: str, path: str = '/') -> str:
    """
    Build the system information block embedded in update notifications.

    Args:
        dpkg_log: Package manager log to take recent installs from
        path: Mount point to report disk usage for

    Returns:
        Multi-line plain-text summary
    """
    disk = psutil.disk_usage(path)
    memory = psutil.virtual_memory()
    uptime = time.time() - psutil.boot_time()
    installs = last_package_installs(dpkg_log) or [NO_INSTALLS_MESSAGE]

    lines = [
        "System Information:",
        "-------------------",
        "Disk Space:",
        f"{path}: {format_size(disk.used)} used of {format_size(disk.total)} "
        f"({disk.percent:.0f}%), {format_size(disk.free)} available",
        "",
        "Memory Usage:",
        f"{format_size(memory.total - memory.available)} used of "
        f"{format_size(memory.total)} ({memory.percent:.0f}%)",
        "",
        "System Uptime:",
        f"{format_uptime(uptime)} (since {datetime.fromtimestamp(psutil.boot_time()):%Y-%m-%d %H:%M})",
        "",
        "Last 5 package updates:",
    ]
    lines.extend(installs)
    return "\n".join(lines)


def check_network(url: str, attempts: int = 5, delay: float = 5, timeout: float = 10) -> bool:
    """
    Probe external connectivity.

    Any HTTP response counts as connectivity; only transport errors count
    as failures.

    Args:
        url: URL to request
        attempts: Maximum number of probes
        delay: Seconds to wait between probes
        timeout: Per-request timeout in seconds

    Returns:
        bool: True as soon as one probe succeeds
    """
    for attempt in range(1, attempts + 1):
        try:
            requests.head(url, timeout=timeout, allow_redirects=True)
            return True
        except requests.RequestException as e:
            logger.warning(f"Network check failed, attempt {attempt} of {attempts}: {e}")
        if attempt < attempts:
            time.sleep(delay)
    return False
