"""
Maintenance runners.

Each runner is a linear sequence of stages sharing the error handling of
``Runner``: stage-specific failure notifications, a blanket handler for
anything unexpected, and warning notifications for post-success problems.
"""

from host_maintenance.runners.base import Runner, StageFailed
from host_maintenance.runners.backup import BackupRunner
from host_maintenance.runners.update import UpdateRunner

RUNNERS = {
    BackupRunner.name: BackupRunner,
    UpdateRunner.name: UpdateRunner,
}

__all__ = [
    "Runner",
    "StageFailed",
    "BackupRunner",
    "UpdateRunner",
    "RUNNERS",
]
