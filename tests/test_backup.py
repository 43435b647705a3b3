"""
Test suite for the backup runner.

Covers the stage sequence, the failure policy of every fatal stage, the
post-success warning paths, remote retention and dry-run mode.
"""

import re
import pytest
import shutil
from datetime import datetime
from pathlib import Path

from host_maintenance.notify import NotificationKind
from host_maintenance.records import read_record
from host_maintenance.remote import RemoteObject
from host_maintenance.runners import backup as backup_module
from host_maintenance.runners.backup import BackupRunner
from host_maintenance.utils.process import RunLock

from tests.conftest import FakeRemote

ARTIFACT_NAME = re.compile(r'^testhost_backup_\d{2}-\d{2}-\d{4}_\d{2}-\d{2}-\d{2}\.tar\.gz$')


def write_archive(cmd):
    flag = '-cf' if '-cf' in cmd else '-czf'
    Path(cmd[cmd.index(flag) + 1]).write_bytes(b'\0' * 2048)


def dated_objects(*days):
    return [
        RemoteObject(f"hostA_backup_{day}-2024_03-00-00.tar.gz", datetime.strptime(f"{day}-2024", "%m-%d-%Y"))
        for day in days
    ]


@pytest.fixture
def missing_tools(monkeypatch):
    """Every tool is installed except the names in the returned set."""
    missing = {'pigz'}

    def which(name, *args, **kwargs):
        return None if name in missing else f"/usr/bin/{name}"

    monkeypatch.setattr(shutil, "which", which)
    return missing


@pytest.fixture
def backup_commands(commands, missing_tools):
    commands.when('tar -', 0, side_effect=write_archive)
    return commands


@pytest.fixture
def runner(config, notifier, remote, backup_commands):
    return BackupRunner(config, notifier, remote=remote)


def archives(config):
    return list(Path(config['BACKUP_HOME']).glob('*.tar.gz'))


class TestSuccessfulBackup:
    """A run where every collaborator behaves."""

    def test_uploads_one_artifact_and_notifies(self, runner, config, notifier, remote):
        assert runner.execute() == 0

        assert len(remote.uploaded) == 1
        assert ARTIFACT_NAME.match(remote.uploaded[0])

        assert len(notifier.sent) == 1
        success = notifier.sent[0]
        assert success.kind is NotificationKind.SUCCESS
        assert success.subject == "testhost Backup Successful"
        assert success.body == "Backup completed successfully.\nBackup file size: 2.0K"
        assert success.include_log is True

    def test_leaves_no_local_state(self, runner, config):
        runner.execute()

        assert archives(config) == []
        assert not (Path(config['BACKUP_HOME']) / 'temp_backup').exists()

    def test_writes_run_record(self, runner, config):
        runner.execute()

        record = read_record(config['STATE_DIR'], 'backup')
        assert record.status == 'success'
        assert record.artifact_size == '2.0K'
        assert record.exit_code == 0

    def test_stage_commands(self, runner, config, backup_commands):
        runner.execute()

        staging = str(Path(config['BACKUP_HOME']) / 'temp_backup')
        rsync = backup_commands.invoked('rsync')[0]
        assert '-aAX' in rsync
        assert '--one-file-system' in rsync
        assert f"--exclude={staging}" in rsync
        assert f"--exclude={config['BACKUP_HOME']}/.cache" in rsync
        assert rsync[-2:] == ['/', staging]

        tar = backup_commands.invoked('tar -')[0]
        assert '-czf' in tar
        assert backup_commands.invoked('chown tester:tester')

    def test_housekeeping_clears_user_cache(self, runner, config, backup_commands):
        cache = Path(config['BACKUP_HOME']) / '.cache'
        (cache / 'thumbnails').mkdir(parents=True)
        (cache / 'pip.log').write_text('cached')

        runner.execute()

        assert cache.is_dir()
        assert list(cache.iterdir()) == []
        assert backup_commands.invoked('apt-get clean')
        assert backup_commands.invoked('journalctl --vacuum-time=3d')

    def test_pigz_used_when_installed(self, runner, missing_tools, backup_commands):
        missing_tools.clear()

        assert runner.execute() == 0
        tar = backup_commands.invoked('tar -')[0]
        assert tar[tar.index('tar'):tar.index('tar') + 4] == ['tar', '-I', 'pigz', '-cf']

    def test_undeliverable_email_does_not_fail_the_run(self, runner, config, notifier):
        notifier.fail = True

        assert runner.execute() == 0
        assert notifier.count(NotificationKind.SUCCESS) == 1
        assert read_record(config['STATE_DIR'], 'backup').status == 'success'

    def test_vanished_files_do_not_fail_the_copy(self, runner, notifier, backup_commands):
        backup_commands.when('rsync', 24)

        assert runner.execute() == 0
        assert notifier.count(NotificationKind.FAILURE) == 0
        assert notifier.count(NotificationKind.SUCCESS) == 1


class TestFatalStages:
    """Every fatal stage sends exactly one failure and leaves nothing behind."""

    def test_copy_failure(self, runner, config, notifier, remote, backup_commands):
        backup_commands.when('rsync', 23)

        assert runner.execute() == 1

        assert archives(config) == []
        assert not backup_commands.invoked('tar -')
        assert remote.uploaded == []
        assert len(notifier.sent) == 1
        failure = notifier.sent[0]
        assert failure.kind is NotificationKind.FAILURE
        assert failure.subject == "testhost Backup Failed"
        assert failure.body == "Backup failed during filesystem backup creation."
        assert failure.include_log is True

    def test_compress_failure(self, runner, config, notifier, backup_commands):
        backup_commands.when('tar -', 2)

        assert runner.execute() == 1
        assert archives(config) == []
        assert not (Path(config['BACKUP_HOME']) / 'temp_backup').exists()
        assert [n.body for n in notifier.sent] == ["Backup failed during filesystem backup tarball creation."]

    def test_staging_dir_failure_notifies(self, runner, config, notifier, backup_commands):
        (Path(config['BACKUP_HOME']) / 'temp_backup').write_text('in the way')

        assert runner.execute() == 1
        assert not backup_commands.invoked('rsync')
        assert notifier.count(NotificationKind.FAILURE) == 1
        assert "temporary directory" in notifier.sent[0].body

    def test_ownership_failure(self, runner, config, notifier, remote, backup_commands):
        backup_commands.when('chown', 1)

        assert runner.execute() == 1
        assert remote.uploaded == []
        assert archives(config) == []
        assert [n.body for n in notifier.sent] == ["Backup failed during changing ownership."]

    def test_upload_failure_removes_local_archive(self, runner, config, notifier, remote):
        remote.fail_copy = True

        assert runner.execute() == 1
        assert archives(config) == []
        assert [n.body for n in notifier.sent] == ["Backup failed during upload to cloud storage."]

        record = read_record(config['STATE_DIR'], 'backup')
        assert record.status == 'failed'
        assert record.message == "Backup failed during upload to cloud storage."

    def test_unexpected_error_is_reported_once(self, runner, config, notifier, monkeypatch):
        def broken_size(num_bytes):
            raise ValueError("size unavailable")

        monkeypatch.setattr(backup_module, "format_size", broken_size)

        assert runner.execute() == 1
        assert len(notifier.sent) == 1
        failure = notifier.sent[0]
        assert failure.kind is NotificationKind.FAILURE
        assert failure.body.startswith("Script failed on line ")
        assert "with exit code 1 at: " in failure.body
        assert archives(config) == []

    def test_missing_commands_abort_before_anything_runs(self, runner, notifier, missing_tools, backup_commands):
        missing_tools.add('rclone')

        assert runner.execute() == 1
        assert backup_commands.commands == []
        assert notifier.sent == []

    def test_overlapping_run_is_refused(self, runner, config, notifier, backup_commands):
        with RunLock('backup', config['LOCK_DIR']):
            assert runner.execute() == 1

        assert backup_commands.commands == []
        assert notifier.sent == []

    def test_unusable_lock_dir_is_reported(self, config, notifier, remote, backup_commands, tmp_path):
        lock_path = tmp_path / 'not-a-dir'
        lock_path.write_text('')
        config['LOCK_DIR'] = str(lock_path)
        runner = BackupRunner(config, notifier, remote=remote)

        assert runner.execute() == 1

        assert backup_commands.commands == []
        assert len(notifier.sent) == 1
        failure = notifier.sent[0]
        assert failure.kind is NotificationKind.FAILURE
        assert failure.subject == "testhost Backup Failed"
        assert failure.body.startswith("Could not take the run lock ")

        record = read_record(config['STATE_DIR'], 'backup')
        assert record.status == 'failed'
        assert record.exit_code == 1


class TestPostSuccessWarnings:
    """Problems after the upload downgrade to warnings."""

    def test_local_cleanup_failure(self, runner, config, notifier, monkeypatch):
        original_unlink = Path.unlink

        def unlink(self, *args, **kwargs):
            if self.name.endswith('.tar.gz'):
                raise PermissionError(13, 'Permission denied', str(self))
            return original_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", unlink)

        assert runner.execute() == 0
        assert notifier.count(NotificationKind.WARNING) == 1
        assert notifier.count(NotificationKind.FAILURE) == 0
        assert notifier.count(NotificationKind.SUCCESS) == 1

        warning = next(n for n in notifier.sent if n.kind is NotificationKind.WARNING)
        assert warning.subject == "testhost Backup Warning"
        assert warning.body == "Backup completed but failed to clean up the local backup file."
        assert read_record(config['STATE_DIR'], 'backup').status == 'warning'

    def test_delete_failures_send_one_warning(self, config, notifier, backup_commands):
        remote = FakeRemote(dated_objects('01-01', '01-02', '01-03'))
        remote.fail_delete = {obj.name for obj in dated_objects('01-01', '01-02')}
        runner = BackupRunner(config, notifier, remote=remote)

        assert runner.execute() == 0
        assert notifier.count(NotificationKind.WARNING) == 1
        assert notifier.count(NotificationKind.SUCCESS) == 1

    def test_listing_failure_sends_warning(self, runner, notifier, remote):
        remote.fail_list = True

        assert runner.execute() == 0
        assert notifier.count(NotificationKind.WARNING) == 1
        assert remote.deleted == []


class TestRetention:
    """The remote folder keeps the two newest artifacts."""

    def test_keeps_two_most_recent(self, config, notifier, backup_commands):
        remote = FakeRemote(dated_objects('01-01', '01-02', '01-03', '01-04'))
        runner = BackupRunner(config, notifier, remote=remote)

        runner._enforce_retention()

        assert remote.names() == [
            "hostA_backup_01-03-2024_03-00-00.tar.gz",
            "hostA_backup_01-04-2024_03-00-00.tar.gz"
        ]
        assert notifier.sent == []

    def test_full_run_prunes_to_newest_two(self, config, notifier, backup_commands):
        remote = FakeRemote(dated_objects('01-01', '01-02', '01-03'))
        runner = BackupRunner(config, notifier, remote=remote)

        assert runner.execute() == 0

        assert len(remote.names()) == 2
        assert remote.uploaded[0] in remote.names()
        assert "hostA_backup_01-03-2024_03-00-00.tar.gz" in remote.names()
        assert sorted(remote.deleted) == [
            "hostA_backup_01-01-2024_03-00-00.tar.gz",
            "hostA_backup_01-02-2024_03-00-00.tar.gz"
        ]

    def test_nothing_deleted_at_or_below_limit(self, config, notifier, backup_commands):
        remote = FakeRemote(dated_objects('01-01'))
        runner = BackupRunner(config, notifier, remote=remote)

        assert runner.execute() == 0
        assert remote.deleted == []
        assert len(remote.names()) == 2


class TestDryRun:
    """Dry-run mode logs instead of acting and always succeeds."""

    @pytest.fixture
    def dry_runner(self, config, notifier, backup_commands):
        remote = FakeRemote(dated_objects('01-01', '01-02', '01-03', '01-04'))
        return BackupRunner(config, notifier, remote=remote, dry_run=True)

    def test_no_side_effects(self, dry_runner, config, notifier, backup_commands):
        cache_file = Path(config['BACKUP_HOME']) / '.cache' / 'keep.me'
        cache_file.parent.mkdir()
        cache_file.write_text('cached')

        assert dry_runner.execute() == 0

        assert backup_commands.commands == []
        assert notifier.sent == []
        assert dry_runner.remote.uploaded == []
        assert dry_runner.remote.deleted == []
        assert len(dry_runner.remote.names()) == 4
        assert cache_file.exists()
        assert not (Path(config['BACKUP_HOME']) / 'temp_backup').exists()
        assert not Path(config['LOCK_DIR']).exists()
        assert read_record(config['STATE_DIR'], 'backup') is None

    def test_succeeds_despite_simulated_failures(self, dry_runner, notifier, missing_tools):
        missing_tools.update({'rsync', 'rclone'})
        dry_runner.remote.fail_list = True

        assert dry_runner.execute() == 0
        assert notifier.sent == []

    def test_succeeds_despite_unexpected_error(self, dry_runner, notifier, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(dry_runner, "_compress", broken)

        assert dry_runner.execute() == 0
        assert notifier.sent == []
