"""
Base runner interface for host-maintenance.

A runner is one linear maintenance job (backup, update). This module defines
the abstract base class both runners implement and the error handling they
share:

- anticipated stage failures go through ``fail()``, which logs, sends the
  stage-specific failure notification, cleans up and raises ``StageFailed``;
- anything else escaping ``run_stages()`` is caught by ``execute()``, logged
  with its source line, reported with one generic failure notification and
  converted into the process exit status;
- post-success problems go through ``warn()`` and leave the run successful.

Example:
    class MyRunner(Runner):
        name = 'my-job'
        subject_prefix = 'My Job'

        def run_stages(self):
            self.stage("Doing the work")
            if not do_work():
                self.fail("Work failed.")
            return STATUS_SUCCESS, "done"
"""

import logging
import traceback
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, NoReturn

from host_maintenance.logger import STAGE
from host_maintenance.notify import Notifier, Notification, NotificationKind
from host_maintenance.records import (
    RunRecord,
    write_record,
    STATUS_FAILED,
    STATUS_WARNING
)
from host_maintenance.utils.process import RunLock, LockError

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


class StageFailed(Exception):
    """Raised after an anticipated stage failure has been reported."""

    def __init__(self, stage: str, message: str, exit_code: int = 1):
        self.stage = stage
        self.message = message
        self.exit_code = exit_code
        super().__init__(f"{stage}: {message}")


class Runner(ABC):
    """
    Abstract base class for maintenance runners.

    Attributes:
        name (str): Runner identity, used for the lock and run record
        subject_prefix (str): Word used in notification subjects
        attach_log (bool): Append this run's log lines to notifications
        config (Dict[str, Any]): Validated configuration
        notifier (Notifier): Email transport
        dry_run (bool): Log decisions instead of mutating state
        warnings (int): Warning notifications sent during this run
    """

    name = 'runner'
    subject_prefix = 'Maintenance'
    attach_log = False

    def __init__(self, config: Dict[str, Any], notifier: Notifier, dry_run: bool = False):
        self.config = config
        self.notifier = notifier
        self.dry_run = dry_run
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")
        self.hostname = config['HOSTNAME']

        self.current_stage = 'start'
        self.started: Optional[datetime] = None
        self.timestamp = ''
        self.warnings = 0
        self.artifact_size: Optional[str] = None

    @abstractmethod
    def run_stages(self) -> Tuple[str, str]:
        """
        Execute the runner's stages in order.

        Returns:
            Tuple of (run status, summary message)

        Raises:
            StageFailed: After an anticipated failure has been reported
        """
        pass

    def preflight(self) -> Optional[int]:
        """Checks that must pass before locking; return an exit code to abort."""
        return None

    def cleanup(self) -> None:
        """Remove partial state left behind by a failed run."""
        pass

    def stage(self, description: str) -> None:
        self.current_stage = description
        self.logger.log(STAGE, description)

    def subject(self, outcome: str) -> str:
        return f"{self.hostname} {self.subject_prefix} {outcome}"

    def fail(
        self,
        body: str,
        exit_code: int = 1,
        kind: NotificationKind = NotificationKind.FAILURE,
        subject: Optional[str] = None
    ) -> NoReturn:
        """Report an anticipated fatal failure of the current stage."""
        self.logger.error(body)
        self.notifier.notify(Notification(
            kind,
            subject or self.subject('Failed'),
            body,
            include_log=self.attach_log
        ))
        self._safe_cleanup()
        raise StageFailed(self.current_stage, body, exit_code)

    def warn(self, body: str) -> None:
        """Report a problem that does not change the run's outcome."""
        self.logger.warning(body)
        self.warnings += 1
        self.notifier.notify(Notification(
            NotificationKind.WARNING,
            self.subject('Warning'),
            body,
            include_log=self.attach_log
        ))

    def execute(self) -> int:
        """
        Run the job end to end.

        Returns:
            Process exit status
        """
        code = self.preflight()
        if code is not None:
            return code

        self.started = datetime.now()
        self.timestamp = self.started.strftime(TIMESTAMP_FORMAT)

        lock = RunLock(self.name, self.config['LOCK_DIR'])
        if not self.dry_run:
            try:
                lock.acquire()
            except LockError as e:
                self.logger.error(str(e))
                return 1
            except OSError as e:
                message = f"Could not take the run lock {lock.path}: {e} at: {self.timestamp}"
                self.logger.error(message)
                self.notifier.notify(Notification(
                    NotificationKind.FAILURE,
                    self.subject('Failed'),
                    message,
                    include_log=self.attach_log
                ))
                self._record(STATUS_FAILED, message, 1)
                return 1

        try:
            return self._execute_stages()
        finally:
            lock.release()

    def _execute_stages(self) -> int:
        try:
            status, message = self.run_stages()
            exit_code = 0
            if self.warnings and status != STATUS_FAILED:
                status = STATUS_WARNING
        except StageFailed as e:
            status, message, exit_code = STATUS_FAILED, e.message, e.exit_code
        except Exception as e:
            exit_code = getattr(e, 'returncode', None) or 1
            location = self._failing_line(e)
            message = (
                f"Script failed on line {location} with exit code {exit_code} "
                f"at: {self.timestamp}"
            )
            self.logger.error(f"Error on line {location}: Exit code {exit_code} ({e})", exc_info=True)
            status = STATUS_FAILED
            if self.dry_run:
                return 0
            self.notifier.notify(Notification(
                NotificationKind.FAILURE,
                self.subject('Failed'),
                message,
                include_log=self.attach_log
            ))
            self._safe_cleanup()

        if self.dry_run:
            return 0

        self._record(status, message, exit_code)
        return exit_code

    def _safe_cleanup(self) -> None:
        try:
            self.cleanup()
        except Exception:
            self.logger.exception("Cleanup after failure did not complete")

    def _record(self, status: str, message: str, exit_code: int) -> None:
        record = RunRecord(
            runner=self.name,
            status=status,
            started=self.timestamp,
            finished=datetime.now().strftime(TIMESTAMP_FORMAT),
            message=message,
            artifact_size=self.artifact_size,
            exit_code=exit_code
        )
        try:
            write_record(self.config['STATE_DIR'], record)
        except OSError as e:
            self.logger.warning(f"Could not write run record: {e}")

    @staticmethod
    def _failing_line(error: BaseException) -> str:
        frames = traceback.extract_tb(error.__traceback__)
        if not frames:
            return 'unknown'
        last = frames[-1]
        return f"{Path(last.filename).name}:{last.lineno}"
