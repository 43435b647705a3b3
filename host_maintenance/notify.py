"""
Email notifications for host-maintenance.

Messages are plain text with ``To:``/``Subject:`` header lines, a blank line
and the body, piped into msmtp. Delivery is fire-and-forget: a failed
dispatch is logged and never changes the outcome of a run.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List, Optional

from host_maintenance.logger import RunLogCollector
from host_maintenance.utils.process import run_command

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised by a transport that could not hand a message off."""
    pass


class NotificationKind(Enum):
    SUCCESS = "success"
    REBOOT = "reboot"
    WARNING = "warning"
    FAILURE = "failure"
    DISK_WARNING = "disk_warning"
    DISK_CRITICAL = "disk_critical"


@dataclass
class Notification:
    kind: NotificationKind
    subject: str
    body: str
    include_log: bool = False


class Notifier(ABC):
    """
    Base class for notification transports.

    ``notify`` records every notification it is asked to send, so callers and
    tests can see exactly what a run emitted, then hands it to ``deliver``.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.recipient = config.get('EMAIL', '')
        self.sent: List[Notification] = []

    def notify(self, notification: Notification) -> bool:
        """
        Send a notification without ever raising.

        Returns:
            bool: True if the transport accepted the message
        """
        self.sent.append(notification)
        logger.info(f"Sending {notification.kind.value} notification: {notification.subject}")
        try:
            self.deliver(notification)
            return True
        except (NotificationError, OSError) as e:
            logger.warning(f"Failed to send notification '{notification.subject}': {e}")
            return False

    @abstractmethod
    def deliver(self, notification: Notification) -> None:
        """Hand the message to the transport."""
        pass

    def count(self, kind: NotificationKind) -> int:
        return sum(1 for n in self.sent if n.kind is kind)


class EmailNotifier(Notifier):
    """Deliver notifications through msmtp."""

    def __init__(self, config: Dict[str, Any], run_log: Optional[RunLogCollector] = None):
        """
        Args:
            config: Configuration with EMAIL and MSMTP_* settings
            run_log: Collector whose lines are appended when a notification asks for the log
        """
        super().__init__(config)
        self.binary = config.get('MSMTP_BINARY', 'msmtp')
        self.msmtp_config = config.get('MSMTP_CONFIG', '')
        self.account = config.get('MSMTP_ACCOUNT', 'default')
        self.run_log = run_log

    def format_message(self, notification: Notification) -> str:
        message = f"To: {self.recipient}\nSubject: {notification.subject}\n\n{notification.body}\n"
        if notification.include_log and self.run_log is not None and self.run_log.lines:
            message += "\n" + self.run_log.text() + "\n"
        return message

    def deliver(self, notification: Notification) -> None:
        cmd = [self.binary]
        if self.msmtp_config:
            cmd += ['-C', self.msmtp_config]
        cmd += ['-a', self.account, self.recipient]

        result = run_command(cmd, input_text=self.format_message(notification))
        if result.returncode != 0:
            raise NotificationError(
                f"msmtp exited {result.returncode}: {(result.stderr or '').strip()}"
            )
