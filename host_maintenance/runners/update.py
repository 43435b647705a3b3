"""
OS package update with retry, disk checks and reboot handling.

Stages, each terminal on failure:
network check, disk check, package list update (retried), upgrade,
dist-upgrade, cleanup (unchecked), reboot decision, notification, reboot.

Only the package list update is retried. Upgrade and dist-upgrade get a
single attempt each.
"""

import os
import time
import shutil
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from host_maintenance.notify import Notifier, Notification, NotificationKind
from host_maintenance.records import STATUS_SUCCESS, STATUS_REBOOT
from host_maintenance.runners.base import Runner
from host_maintenance.utils.process import run_command
from host_maintenance.utils.system import (
    check_network,
    disk_usage_percent,
    free_space_kb,
    health_snapshot
)

APT_ENV = {'DEBIAN_FRONTEND': 'noninteractive'}
APT_LISTS_DIR = '/var/lib/apt/lists'
REBOOT_MESSAGE = "System is rebooting after software update"


class UpdateRunner(Runner):
    """Bring the package set up to date and reboot when the OS asks for it."""

    name = 'update'
    subject_prefix = 'Update'

    def __init__(self, config: Dict[str, Any], notifier: Notifier):
        super().__init__(config, notifier)
        self.max_retries = config['MAX_RETRIES']
        self.retry_delay = config['RETRY_DELAY']
        self.disk_warn_threshold = config['DISK_WARN_THRESHOLD']
        self.min_free_space_kb = config['MIN_FREE_SPACE_KB']
        self.reboot_marker = Path(config['REBOOT_REQUIRED_FILE'])
        self.shutdown_binary = config.get('SHUTDOWN_BINARY', '/sbin/shutdown')
        self.apt_lists_dir = Path(APT_LISTS_DIR)

    def preflight(self) -> Optional[int]:
        if os.geteuid() != 0:
            self.logger.error("This script must be run as root")
            return 1
        return None

    def run_stages(self) -> Tuple[str, str]:
        self.logger.info("==================================")
        self.logger.info(f"Update started at: {self.timestamp}")

        self._check_network()
        self._check_disk()
        self._update_package_lists()
        self._upgrade()
        self._dist_upgrade()
        self._cleanup_packages()

        reboot = self._reboot_required()
        self._notify_outcome(reboot)

        self.logger.info("Update completed successfully.")
        self.logger.info("==================================")

        if reboot:
            self._schedule_reboot()
            return STATUS_REBOOT, f"Update completed successfully at: {self.timestamp}, reboot scheduled"
        return STATUS_SUCCESS, f"Update completed successfully at: {self.timestamp}"

    def _apt(self, *args: str):
        result = run_command(['apt-get'] + list(args), env=APT_ENV)
        if result.returncode != 0 and result.stderr:
            for line in result.stderr.strip().splitlines()[-5:]:
                self.logger.error(f"apt-get: {line}")
        return result

    def _check_network(self) -> None:
        self.stage("Checking network connectivity...")
        reachable = check_network(
            self.config['NETWORK_CHECK_URL'],
            attempts=self.config['NETWORK_CHECK_ATTEMPTS'],
            delay=self.config['NETWORK_CHECK_DELAY'],
            timeout=self.config['NETWORK_CHECK_TIMEOUT']
        )
        if not reachable:
            self.logger.error("Network connectivity check failed.")
            self.fail(f"Update failed - No network connectivity at: {self.timestamp}")

    def _check_disk(self) -> None:
        self.stage("Checking disk space...")
        used = disk_usage_percent('/')
        if used > self.disk_warn_threshold:
            self.logger.warning(f"Disk space is at {used:.0f}%")
            self.notifier.notify(Notification(
                NotificationKind.DISK_WARNING,
                "Disk Space Warning",
                f"Disk space is at {used:.0f}%"
            ))

        available = free_space_kb('/')
        if available < self.min_free_space_kb:
            self.logger.error("Insufficient disk space for updates.")
            self.fail(
                f"Insufficient space for updates. Only {available}KB available.",
                kind=NotificationKind.DISK_CRITICAL,
                subject="Disk Space Critical"
            )

    def _update_package_lists(self) -> None:
        self.stage("Updating package lists...")
        for attempt in range(1, self.max_retries + 1):
            if self._apt('update').returncode == 0:
                self.logger.info("Package list updated successfully.")
                return
            if attempt < self.max_retries:
                self.logger.warning(
                    f"Update failed, retrying in {self.retry_delay} seconds... "
                    f"(Attempt {attempt} of {self.max_retries})"
                )
                time.sleep(self.retry_delay)
                self._clear_package_lists()

        self.logger.error(f"Failed to update package list after {self.max_retries} attempts.")
        self.fail(f"Update failed after {self.max_retries} attempts at: {self.timestamp}")

    def _clear_package_lists(self) -> None:
        """Drop cached package metadata so the next attempt starts clean."""
        if self.apt_lists_dir.is_dir():
            for entry in self.apt_lists_dir.iterdir():
                try:
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                except OSError as e:
                    self.logger.debug(f"Could not remove {entry}: {e}")
        self._apt('clean')

    def _upgrade(self) -> None:
        self.stage("Starting full system upgrade...")
        if self._apt('-y', 'upgrade').returncode != 0:
            self.logger.error("Failed to upgrade packages.")
            self.fail(f"Update failed at: {self.timestamp}")

    def _dist_upgrade(self) -> None:
        self.stage("Performing distribution upgrade...")
        if self._apt('-y', 'dist-upgrade').returncode != 0:
            self.logger.error("Failed to perform distribution upgrade.")
            self.fail(f"Dist-upgrade failed at: {self.timestamp}")

    def _cleanup_packages(self) -> None:
        self.stage("Cleaning up old packages...")
        self._apt('-y', 'autoremove')
        self._apt('-y', 'autoclean')
        self._apt('clean')

    def _reboot_required(self) -> bool:
        if self.reboot_marker.exists():
            self.logger.info("System requires a reboot.")
            return True
        self.logger.info("No reboot required.")
        return False

    def _notify_outcome(self, reboot: bool) -> None:
        snapshot = health_snapshot(self.config['DPKG_LOG'])
        if reboot:
            self.notifier.notify(Notification(
                NotificationKind.REBOOT,
                self.subject('and Reboot'),
                f"Update completed successfully at: {self.timestamp}\n\n"
                f"System will reboot automatically.\n\n{snapshot}"
            ))
        else:
            self.notifier.notify(Notification(
                NotificationKind.SUCCESS,
                self.subject('Successful'),
                f"Update completed successfully at: {self.timestamp}\n\n{snapshot}"
            ))

    def _schedule_reboot(self) -> None:
        delay = self.config['REBOOT_DELAY']
        self.logger.info(f"Rebooting system in {delay.lstrip('+')} minute(s)...")
        # The notification is already out; nothing here may fail the run
        try:
            result = run_command([self.shutdown_binary, '-r', delay, REBOOT_MESSAGE])
        except OSError as e:
            self.logger.error(f"Failed to schedule reboot: {e}")
            return
        if result.returncode != 0:
            self.logger.error(f"Failed to schedule reboot (exit code {result.returncode})")
