"""
Cloud remote access through rclone.

Every rclone call runs under the non-privileged backup account with its own
rclone config, against ``<BACKUP_REMOTE>:<CLOUD_FOLDER>``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Iterable, Union

from host_maintenance.utils.process import run_command, as_user

logger = logging.getLogger(__name__)

# Number of artifacts kept in the remote folder after a retention pass
RETAIN_COUNT = 2

# rclone lsf renders modification times in this layout
LSF_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'
LSF_SEPARATOR = ';'


class RemoteError(Exception):
    """Raised when an rclone operation fails."""
    pass


@dataclass(frozen=True)
class RemoteObject:
    name: str
    modified: datetime


def select_for_pruning(objects: Iterable[RemoteObject], keep: int = RETAIN_COUNT) -> List[RemoteObject]:
    """
    Decide which remote objects a retention pass deletes.

    Objects are ordered newest first by modification time (name breaks ties),
    the first ``keep`` survive and the rest are returned.
    """
    ordered = sorted(objects, key=lambda o: (o.modified, o.name), reverse=True)
    return ordered[keep:]


def parse_lsf_line(line: str) -> RemoteObject:
    """Parse one ``rclone lsf --format tp`` line into a RemoteObject."""
    try:
        stamp, name = line.split(LSF_SEPARATOR, 1)
        return RemoteObject(name=name, modified=datetime.strptime(stamp.strip(), LSF_TIME_FORMAT))
    except ValueError:
        raise RemoteError(f"Unexpected rclone listing line: {line!r}")


class RcloneRemote:
    """The cloud folder one host's artifacts accumulate in."""

    def __init__(self, config: Dict[str, Any]):
        self.binary = config.get('RCLONE_BINARY', 'rclone')
        self.rclone_config = config.get('RCLONE_CONFIG', '')
        self.user = config.get('BACKUP_USER', '')
        self.target = f"{config['BACKUP_REMOTE']}:{config['CLOUD_FOLDER']}"

    def _command(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.rclone_config:
            cmd.append(f"--config={self.rclone_config}")
        cmd.extend(args)
        return as_user(cmd, self.user)

    def _run(self, action: str, *args: str) -> str:
        result = run_command(self._command(*args))
        if result.returncode != 0:
            detail = (result.stderr or '').strip().splitlines()
            raise RemoteError(
                f"rclone {action} failed with exit code {result.returncode}"
                + (f": {detail[-1]}" if detail else "")
            )
        return result.stdout or ''

    def copy(self, local_path: Union[str, Path]) -> None:
        """Upload a local file into the remote folder."""
        logger.debug(f"Copying {local_path} to {self.target}")
        self._run('copy', 'copy', '-v', str(local_path), self.target)

    def list_names(self) -> List[str]:
        """Names of the files in the remote folder."""
        output = self._run('lsf', 'lsf', '--files-only', self.target)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def list_with_timestamps(self) -> List[RemoteObject]:
        """Files in the remote folder with their modification times."""
        output = self._run(
            'lsf', 'lsf', '--files-only', '--format', 'tp',
            '--separator', LSF_SEPARATOR, self.target
        )
        return [parse_lsf_line(line.strip()) for line in output.splitlines() if line.strip()]

    def delete(self, name: str) -> None:
        """Delete one file from the remote folder."""
        logger.debug(f"Deleting {self.target}/{name}")
        self._run('deletefile', 'deletefile', f"{self.target}/{name}")
