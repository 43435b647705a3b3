"""
Full filesystem backup to a cloud remote.

Stages a copy of ``/`` with rsync, packs it into one compressed tarball,
uploads it with rclone and prunes the remote folder down to the newest
artifacts. In dry-run mode every step only logs what it would do.
"""

import os
import shutil
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from host_maintenance.notify import Notifier, Notification, NotificationKind
from host_maintenance.records import STATUS_SUCCESS
from host_maintenance.remote import RcloneRemote, RemoteError, RETAIN_COUNT, select_for_pruning
from host_maintenance.runners.base import Runner
from host_maintenance.utils.process import run_command, privileged, require_commands
from host_maintenance.utils.system import format_size

ARTIFACT_TIME_FORMAT = '%d-%m-%Y_%H-%M-%S'
STAGING_DIR_NAME = 'temp_backup'

# rsync: some files vanished before they could be transferred
RSYNC_VANISHED = 24


class BackupRunner(Runner):
    """
    Produce at most one uploaded artifact per invocation and leave at most
    ``RETAIN_COUNT`` artifacts in the remote folder.
    """

    name = 'backup'
    subject_prefix = 'Backup'
    attach_log = True

    def __init__(
        self,
        config: Dict[str, Any],
        notifier: Notifier,
        remote: Optional[RcloneRemote] = None,
        dry_run: bool = False
    ):
        super().__init__(config, notifier, dry_run=dry_run)
        self.remote = remote or RcloneRemote(config)
        self.user = config['BACKUP_USER']
        self.home = Path(config['BACKUP_HOME'])
        self.staging_dir = self.home / STAGING_DIR_NAME
        self.artifact: Optional[Path] = None

    def required_commands(self) -> List[str]:
        return [
            'rsync',
            'tar',
            self.config.get('RCLONE_BINARY', 'rclone'),
            self.config.get('MSMTP_BINARY', 'msmtp')
        ]

    def preflight(self) -> Optional[int]:
        missing = require_commands(self.required_commands())
        if missing and not self.dry_run:
            self.logger.error(f"Cannot run backup, missing commands: {', '.join(missing)}")
            return 1
        return None

    def run_stages(self) -> Tuple[str, str]:
        self.logger.info(f"Starting backup process for {self.hostname}")
        if self.dry_run:
            self.logger.info("Running in dry-run mode")

        stamp = self.started.strftime(ARTIFACT_TIME_FORMAT)
        self.artifact = self.home / f"{self.hostname}_backup_{stamp}.tar.gz"

        self._housekeeping()
        self._create_staging_dir()
        self._copy_filesystem()
        self._compress()
        self._remove_staging_dir()
        self._record_size()
        self._set_ownership()
        self._upload()
        self._remove_local_artifact()
        self._enforce_retention()

        self.logger.info("Backup process finished")
        self._notify_success()

        if not self.dry_run:
            self.cleanup()
        self.logger.info("Script execution completed")
        return STATUS_SUCCESS, f"Backup completed successfully. Backup file size: {self.artifact_size}"

    def cleanup(self) -> None:
        """Remove the staging directory and local artifact if still present."""
        self.logger.info("Cleaning up...")
        self._remove_path(self.staging_dir)
        if self.artifact is not None:
            self._remove_path(self.artifact)

    def _housekeeping(self) -> None:
        self.stage("Performing pre-backup cleanup...")
        if self.dry_run:
            self.logger.info("[Dry run] Would perform system cleanup")
            return

        apt_env = {'DEBIAN_FRONTEND': 'noninteractive'}
        commands = [
            ['apt-get', 'clean'],
            ['apt-get', 'autoremove', '-y'],
            ['journalctl', f"--vacuum-time={self.config.get('JOURNAL_VACUUM_TIME', '3d')}"],
        ]
        for cmd in commands:
            try:
                run_command(privileged(cmd), env=apt_env)
            except OSError as e:
                self.logger.debug(f"Skipped {cmd[0]}: {e}")

        cache_dir = self.home / '.cache'
        if cache_dir.is_dir():
            for entry in cache_dir.iterdir():
                try:
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                except OSError as e:
                    self.logger.debug(f"Could not remove {entry}: {e}")

    def _create_staging_dir(self) -> None:
        self.stage("Creating temporary directory for backup...")
        if self.dry_run:
            self.logger.info(f"[Dry run] Would create {self.staging_dir}")
            return
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.fail(f"Backup failed while creating the temporary directory {self.staging_dir}: {e}")

    def excludes(self) -> List[str]:
        patterns = [p.format(home=self.home) for p in self.config.get('BACKUP_EXCLUDES', [])]
        patterns.append(str(self.staging_dir))
        return patterns

    def _copy_filesystem(self) -> None:
        self.stage("Creating filesystem backup using rsync...")
        if self.dry_run:
            self.logger.info(
                f"[Dry run] Would create filesystem backup using rsync, excluding: {', '.join(self.excludes())}"
            )
            return

        cmd = ['rsync', '-aAX', '--one-file-system']
        cmd += [f"--exclude={pattern}" for pattern in self.excludes()]
        cmd += ['/', str(self.staging_dir)]

        result = run_command(privileged(cmd), capture=False)
        if result.returncode == RSYNC_VANISHED:
            self.logger.warning("Some files vanished during the copy; continuing with the staged tree")
        elif result.returncode != 0:
            self.logger.error(f"rsync exited with code {result.returncode}")
            self.fail("Backup failed during filesystem backup creation.")
        self.logger.info(f"Filesystem backup created successfully in {self.staging_dir}")

    def _compress(self) -> None:
        self.stage("Creating compressed tarball of the backup...")
        if self.dry_run:
            self.logger.info("[Dry run] Would create compressed tarball of the backup")
            return

        if shutil.which('pigz'):
            compressor = 'pigz'
            cmd = ['tar', '-I', 'pigz', '-cf', str(self.artifact), '-C', str(self.staging_dir), '.']
        else:
            compressor = 'gzip'
            cmd = ['tar', '-czf', str(self.artifact), '-C', str(self.staging_dir), '.']

        result = run_command(privileged(cmd))
        if result.returncode != 0:
            self.logger.error(f"Failed to create filesystem backup tarball using {compressor}")
            self.fail("Backup failed during filesystem backup tarball creation.")
        self.logger.info(f"Filesystem backup tarball created successfully using {compressor}: {self.artifact}")

    def _remove_staging_dir(self) -> None:
        self.stage("Cleaning up temporary directory...")
        if self.dry_run:
            self.logger.info(f"[Dry run] Would remove {self.staging_dir}")
            return
        self._remove_path(self.staging_dir)

    def _record_size(self) -> None:
        if self.dry_run:
            self.logger.info("[Dry run] Would calculate backup file size")
            return
        self.artifact_size = format_size(os.path.getsize(self.artifact))
        self.logger.info(f"Backup file size: {self.artifact_size}")

    def _set_ownership(self) -> None:
        self.stage("Changing ownership of backup file...")
        if self.dry_run:
            self.logger.info(f"[Dry run] Would change ownership of backup file to {self.user}")
            return
        result = run_command(privileged(['chown', f"{self.user}:{self.user}", str(self.artifact)]))
        if result.returncode != 0:
            self.fail("Backup failed during changing ownership.")
        self.logger.info(f"Ownership of backup file changed to {self.user}")

    def _upload(self) -> None:
        self.stage("Uploading to cloud storage...")
        if self.dry_run:
            self.logger.info(f"[Dry run] Would upload backup file to {self.remote.target}")
            return
        try:
            self.remote.copy(self.artifact)
        except RemoteError as e:
            self.logger.error(str(e))
            self.fail("Backup failed during upload to cloud storage.")
        self.logger.info("Backup file uploaded to cloud storage successfully")

    def _remove_local_artifact(self) -> None:
        self.stage("Cleaning up the local backup file...")
        if self.dry_run:
            self.logger.info("[Dry run] Would remove local backup file")
            return
        try:
            self.artifact.unlink()
        except OSError as e:
            self.logger.error(f"Failed to remove the local backup file: {e}")
            self.warn("Backup completed but failed to clean up the local backup file.")
            return
        self.logger.info("Local backup file removed successfully")

    def _enforce_retention(self) -> None:
        self.stage("Managing backups in cloud storage...")
        try:
            names = self.remote.list_names()
        except RemoteError as e:
            self._retention_problem(f"Could not list backups in cloud storage: {e}")
            return

        if len(names) <= RETAIN_COUNT:
            self.logger.info(
                f"Less than or equal to {RETAIN_COUNT} backups found. No backups will be deleted."
            )
            return

        self.logger.info(f"More than {RETAIN_COUNT} backups found. Removing older backups...")
        try:
            objects = self.remote.list_with_timestamps()
        except RemoteError as e:
            self._retention_problem(f"Could not list backup timestamps in cloud storage: {e}")
            return

        failed = []
        for obj in select_for_pruning(objects, RETAIN_COUNT):
            if self.dry_run:
                self.logger.info(f"[Dry run] Would delete {obj.name} (modified {obj.modified})")
                continue
            try:
                self.remote.delete(obj.name)
                self.logger.info(f"Deleted old backup {obj.name}")
            except RemoteError as e:
                self.logger.error(str(e))
                failed.append(obj.name)

        if failed:
            self.warn(
                "Backup completed but failed to remove old backups from cloud storage: "
                + ", ".join(failed)
            )
        elif not self.dry_run:
            self.logger.info("Old backups removed from cloud storage successfully")

    def _retention_problem(self, detail: str) -> None:
        if self.dry_run:
            self.logger.warning(f"[Dry run] {detail}")
            return
        self.logger.error(detail)
        self.warn("Backup completed but failed to remove old backups from cloud storage.")

    def _notify_success(self) -> None:
        if self.dry_run:
            self.logger.info("[Dry run] Would send success email")
            return
        self.notifier.notify(Notification(
            NotificationKind.SUCCESS,
            self.subject('Successful'),
            f"Backup completed successfully.\nBackup file size: {self.artifact_size}",
            include_log=self.attach_log
        ))

    def _remove_path(self, path: Path) -> None:
        """Remove a file or tree, escalating to a privileged rm for root-owned content."""
        if not path.exists() and not path.is_symlink():
            return
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError:
            run_command(privileged(['rm', '-rf', str(path)]))
