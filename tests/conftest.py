"""
pytest configuration and fixtures for host-maintenance tests.

This module provides shared fixtures and configuration for the test suite,
including a recording notifier, an in-memory cloud remote, a stand-in for
subprocess.run and a configuration rooted in a temporary directory.
"""

import os
import logging
import subprocess
import pytest
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional, Callable, Iterable

from host_maintenance.config import DEFAULT_CONFIG
from host_maintenance.logger import APP_LOGGER
from host_maintenance.notify import Notifier, Notification
from host_maintenance.remote import RemoteObject, RemoteError

# Test configuration template; paths are filled in per test
TEST_CONFIG = {
    "EMAIL": "admin@example.com",
    "HOSTNAME": "testhost",
    "BACKUP_USER": "tester",
    "BACKUP_REMOTE": "testremote",
    "CLOUD_FOLDER": "pi_backups_testhost",
    "MAX_RETRIES": 3,
    "RETRY_DELAY": 5,
    "DISK_WARN_THRESHOLD": 90,
    "MIN_FREE_SPACE_KB": 500000,
    "NETWORK_CHECK_URL": "http://mirror.example.com/debian/",
    "LOG_LEVEL": "DEBUG",
    "LOG_COLORS": False
}


class RecordingNotifier(Notifier):
    """Notifier that keeps delivered messages instead of sending them."""

    def __init__(self, config: Dict[str, Any], events: Optional[List] = None, fail: bool = False):
        super().__init__(config)
        self.events = events if events is not None else []
        self.fail = fail
        self.delivered: List[Notification] = []

    def deliver(self, notification: Notification) -> None:
        self.events.append(('notify', notification.subject))
        if self.fail:
            raise OSError("msmtp not reachable")
        self.delivered.append(notification)


class FakeRemote:
    """In-memory cloud folder."""

    def __init__(self, objects: Iterable[RemoteObject] = (), target: str = "testremote:pi_backups_testhost"):
        self.target = target
        self.objects = {obj.name: obj for obj in objects}
        self.uploaded: List[str] = []
        self.deleted: List[str] = []
        self.fail_copy = False
        self.fail_list = False
        self.fail_delete = set()

    def copy(self, local_path) -> None:
        if self.fail_copy:
            raise RemoteError("rclone copy failed with exit code 1: quota exceeded")
        name = Path(local_path).name
        self.uploaded.append(name)
        self.objects[name] = RemoteObject(name, datetime.now())

    def list_names(self) -> List[str]:
        if self.fail_list:
            raise RemoteError("rclone lsf failed with exit code 3: directory not found")
        return sorted(self.objects)

    def list_with_timestamps(self) -> List[RemoteObject]:
        if self.fail_list:
            raise RemoteError("rclone lsf failed with exit code 3: directory not found")
        return list(self.objects.values())

    def delete(self, name: str) -> None:
        if name in self.fail_delete:
            raise RemoteError(f"rclone deletefile failed with exit code 1: {name}")
        self.deleted.append(name)
        del self.objects[name]

    def names(self) -> List[str]:
        return sorted(self.objects)


class CommandRecorder:
    """
    Stand-in for subprocess.run.

    Commands succeed with empty output unless a rule registered with
    ``when`` matches a substring of the joined command line. A rule given
    several exit codes hands them out one call at a time and then keeps
    repeating the last one.
    """

    def __init__(self, events: Optional[List] = None):
        self.events = events if events is not None else []
        self.calls: List[tuple] = []
        self._rules: List[Dict[str, Any]] = []

    @property
    def commands(self) -> List[List[str]]:
        return [cmd for cmd, _ in self.calls]

    def when(
        self,
        match: str,
        *returncodes: int,
        stdout: str = '',
        stderr: str = '',
        side_effect: Optional[Callable[[List[str]], None]] = None
    ) -> None:
        self._rules.append({
            'match': match,
            'codes': list(returncodes) or [0],
            'stdout': stdout,
            'stderr': stderr,
            'side_effect': side_effect
        })

    def run(self, cmd, *args, **kwargs):
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        line = ' '.join(cmd)
        self.events.append(('run', line))

        for rule in reversed(self._rules):
            if rule['match'] in line:
                codes = rule['codes']
                code = codes.pop(0) if len(codes) > 1 else codes[0]
                if code == 0 and rule['side_effect']:
                    rule['side_effect'](cmd)
                return subprocess.CompletedProcess(cmd, code, stdout=rule['stdout'], stderr=rule['stderr'])

        return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')

    def invoked(self, match: str) -> List[List[str]]:
        return [cmd for cmd in self.commands if match in ' '.join(cmd)]


@pytest.fixture
def config(tmp_path: Path) -> Dict[str, Any]:
    """Fixture providing a resolved configuration rooted in tmp_path."""
    home = tmp_path / "home" / "tester"
    home.mkdir(parents=True)

    cfg = deepcopy(DEFAULT_CONFIG)
    cfg.update(TEST_CONFIG)
    cfg.update({
        "BACKUP_HOME": str(home),
        "MSMTP_CONFIG": str(home / ".msmtprc"),
        "RCLONE_CONFIG": str(home / ".config" / "rclone" / "rclone.conf"),
        "BACKUP_LOG_FILE": str(home / "testhost_backup.log"),
        "UPDATE_LOG_FILE": str(home / "update-and-restart.log"),
        "REBOOT_REQUIRED_FILE": str(tmp_path / "reboot-required"),
        "DPKG_LOG": str(tmp_path / "dpkg.log"),
        "LOCK_DIR": str(tmp_path / "lock"),
        "STATE_DIR": str(tmp_path / "state")
    })
    return cfg


@pytest.fixture
def events() -> List:
    """Shared, ordered log of commands run and notifications delivered."""
    return []


@pytest.fixture
def notifier(config: Dict[str, Any], events: List) -> RecordingNotifier:
    return RecordingNotifier(config, events)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def commands(monkeypatch, events: List) -> CommandRecorder:
    """Fixture replacing subprocess.run with a CommandRecorder."""
    recorder = CommandRecorder(events)
    monkeypatch.setattr(subprocess, "run", recorder.run)
    return recorder


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )


@pytest.fixture(autouse=True)
def _setup_testing_environment(monkeypatch):
    """Automatically set up testing environment for all tests."""
    # Ensure predictable timezone
    monkeypatch.setenv("TZ", "UTC")

    for key in list(os.environ):
        if key.startswith("HOSTMAINT_"):
            monkeypatch.delenv(key)

    yield

    # Undo whatever setup_logging attached during the test
    app_logger = logging.getLogger(APP_LOGGER)
    for handler in app_logger.handlers[:]:
        app_logger.removeHandler(handler)
        handler.close()
    app_logger.propagate = True
    app_logger.setLevel(logging.NOTSET)
