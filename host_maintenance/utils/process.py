"""
Process management utilities for host-maintenance.

This module provides utilities for running external commands and guarding
against overlapping runs, including:
- Command execution with logging
- Privilege prefixes (sudo / sudo -u)
- Required command discovery
- Run locks keyed by runner name
- Process information for lock holders
"""

import os
import pwd
import fcntl
import shutil
import logging
import subprocess
import psutil
from pathlib import Path
from typing import Optional, Dict, Any, List, Sequence, Union
from datetime import datetime

logger = logging.getLogger(__name__)


class ProcessError(Exception):
    """Base exception for process-related errors."""
    pass


class CommandError(ProcessError):
    """Raised when an external command exits non-zero under check=True."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ''):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Command '{' '.join(self.cmd)}' failed with exit code {returncode}")


class LockError(ProcessError):
    """Raised when another run already holds the lock."""
    pass


def run_command(
    cmd: Sequence[str],
    check: bool = False,
    capture: bool = True,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None
) -> subprocess.CompletedProcess:
    """
    Run an external command.

    Args:
        cmd: Command and arguments as list
        check: Raise CommandError on non-zero exit
        capture: Capture stdout/stderr instead of inheriting them
        env: Extra environment variables merged over the current environment
        input_text: Text fed to the command's stdin

    Returns:
        The completed process

    Raises:
        CommandError: If check is set and the command fails
    """
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)

    logger.debug(f"Running: {' '.join(cmd)}")
    result = subprocess.run(
        list(cmd),
        capture_output=capture,
        text=True,
        env=run_env,
        input=input_text
    )

    if result.returncode != 0:
        logger.debug(f"Command exited {result.returncode}: {' '.join(cmd)}")
        if capture and result.stderr and result.stderr.strip():
            logger.debug(f"Error output: {result.stderr.strip()}")
        if check:
            raise CommandError(cmd, result.returncode, result.stderr or '')

    return result


def current_user() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


def privileged(cmd: List[str]) -> List[str]:
    """Prefix a command with sudo unless already running as root."""
    if os.geteuid() == 0:
        return list(cmd)
    return ['sudo'] + list(cmd)


def as_user(cmd: List[str], user: str) -> List[str]:
    """Run a command under another account's identity when it differs from ours."""
    if not user or user == current_user():
        return list(cmd)
    return ['sudo', '-u', user] + list(cmd)


def require_commands(commands: Sequence[str]) -> List[str]:
    """
    Check that required system commands are installed.

    Returns:
        List of commands that could not be found
    """
    missing = [cmd for cmd in commands if not shutil.which(cmd)]
    for cmd in missing:
        logger.error(f"Required system command not found: {cmd}")
    return missing


def get_process_info(pid: int) -> Optional[Dict[str, Any]]:
    """
    Get information about a process.

    Args:
        pid: Process ID to query

    Returns:
        Dict containing process information or None if process not found
    """
    try:
        process = psutil.Process(pid)
        with process.oneshot():
            return {
                'pid': pid,
                'name': process.name(),
                'status': process.status(),
                'create_time': datetime.fromtimestamp(process.create_time()).isoformat(),
                'cmdline': process.cmdline(),
                'username': process.username()
            }
    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} not found")
        return None
    except psutil.AccessDenied:
        logger.warning(f"Access denied when querying process {pid}")
        return None


class RunLock:
    """
    Exclusive, non-blocking lock for one runner.

    The lock is an flock on ``<lock_dir>/host-maintenance-<name>.lock``; the
    kernel drops it when the process dies, so a stale file never blocks a
    later run. The holder's PID is written into the file for diagnostics.
    """

    def __init__(self, name: str, lock_dir: Union[str, Path]):
        self.name = name
        self.path = Path(lock_dir) / f"host-maintenance-{name}.lock"
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            LockError: If another process holds it
            OSError: If the lock file cannot be created or locked
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._describe_holder(fd)
            os.close(fd)
            raise LockError(f"Another {self.name} run is in progress ({holder})")
        except OSError:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug(f"Released lock {self.path}")

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def _describe_holder(self, fd: int) -> str:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = os.read(fd, 32).decode(errors='replace').strip()
        if not raw.isdigit():
            return "holder unknown"
        info = get_process_info(int(raw))
        if info is None:
            return f"PID {raw}"
        return f"PID {raw}, {' '.join(info['cmdline']) or info['name']}"

    def __enter__(self) -> 'RunLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
