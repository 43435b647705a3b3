"""
Structured run records.

Each live run leaves ``<STATE_DIR>/<runner>-last-run.json`` behind so the
outcome of the latest backup and update can be read back without scraping
the free-text run logs.
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_WARNING = 'warning'
STATUS_REBOOT = 'reboot'
STATUS_FAILED = 'failed'


@dataclass
class RunRecord:
    runner: str
    status: str
    started: str
    finished: str
    message: str = ''
    artifact_size: Optional[str] = None
    exit_code: int = 0


def record_path(state_dir: Union[str, Path], runner: str) -> Path:
    return Path(state_dir) / f"{runner}-last-run.json"


def write_record(state_dir: Union[str, Path], record: RunRecord) -> Path:
    """
    Persist a run record, replacing the previous one atomically.

    Returns:
        Path of the written record
    """
    path = record_path(state_dir, record.runner)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{record.runner}-", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(asdict(record), f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


def read_record(state_dir: Union[str, Path], runner: str) -> Optional[RunRecord]:
    """Load the last record of a runner, or None if there is none readable."""
    path = record_path(state_dir, runner)
    try:
        with open(path) as f:
            data = json.load(f)
        return RunRecord(**data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring unreadable run record {path}: {e}")
        return None
