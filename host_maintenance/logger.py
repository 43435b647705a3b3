"""
Logging configuration for host-maintenance.

This module provides the logging system shared by both runners:
- Run log file per runner (append-only, or rotated at the start of each run)
- Console output with optional colors
- Syslog integration
- JSON formatting
- Custom log level for stage transitions
- In-memory capture of the current run for inclusion in notifications
"""

import sys
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Dict, Any, List

APP_LOGGER = 'host_maintenance'

# Define custom log level for stage transitions
STAGE = 25
logging.addLevelName(STAGE, 'STAGE')

RUN_LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
RUN_LOG_DATEFMT = '%d/%m/%Y %H:%M:%S'

# ANSI color codes for console output
COLORS = {
    'DEBUG': '\033[36m',     # Cyan
    'INFO': '\033[32m',      # Green
    'STAGE': '\033[35m',     # Magenta
    'WARNING': '\033[33m',   # Yellow
    'ERROR': '\033[31m',     # Red
    'CRITICAL': '\033[41m',  # Red background
    'RESET': '\033[0m'       # Reset
}


class ColoredFormatter(logging.Formatter):
    """Custom formatter for colored console output."""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        """
        Initialize the colored formatter.

        Args:
            fmt: Log message format string
            datefmt: Date format string
            use_colors: Whether to enable colored output
        """
        super().__init__(fmt, datefmt)
        # Only use colors if output is to a terminal
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional color."""
        if self.use_colors and record.levelname in COLORS:
            # Work on a copy so file handlers never see escape codes
            record = logging.makeLogRecord(record.__dict__)
            color = COLORS[record.levelname]
            reset = COLORS['RESET']
            record.levelname = f"{color}{record.levelname}{reset}"
            record.msg = f"{color}{record.msg}{reset}"

        return super().format(record)


class JsonFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Convert log record to JSON string."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data)


class RunLogCollector(logging.Handler):
    """Keeps the formatted lines of the current run in memory."""

    def __init__(self, level: int = logging.INFO):
        super().__init__(level)
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter(fmt=RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def text(self) -> str:
        return '\n'.join(self.lines)


class LogManager:
    """Manages logging configuration and setup."""

    def __init__(
        self,
        config: Dict[str, Any],
        log_file: Optional[str] = None,
        rotate_on_start: bool = False,
        app_name: str = APP_LOGGER
    ):
        """
        Initialize the log manager.

        Args:
            config: Configuration dictionary with logging settings
            log_file: Run log to write; no file handler when omitted
            rotate_on_start: Roll the existing log over before the first record
            app_name: Application name for logger identification
        """
        self.config = config
        self.app_name = app_name
        self.logger = logging.getLogger(app_name)

        self.log_level = getattr(logging, str(config.get('LOG_LEVEL', 'INFO')).upper())
        self.log_file = log_file
        self.rotate_on_start = rotate_on_start
        self.max_bytes = config.get('MAX_LOG_SIZE', 0)
        self.backup_count = config.get('MAX_LOG_FILES', 3)
        self.use_json = config.get('LOG_JSON', False)
        self.use_syslog = config.get('USE_SYSLOG', False)
        self.use_colors = config.get('LOG_COLORS', True)

        self.collector = RunLogCollector()

    def setup(self) -> logging.Logger:
        """Set up logging configuration with all configured handlers."""
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False

        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)
            handler.close()

        self._setup_console_handler()
        if self.log_file:
            self._setup_file_handler()

        if self.use_syslog:
            self._setup_syslog_handler()

        self.logger.addHandler(self.collector)
        return self.logger

    def _setup_console_handler(self) -> None:
        """Set up console (stderr) logging handler."""
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(self.log_level)

        formatter = ColoredFormatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            use_colors=self.use_colors
        )
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

    def _setup_file_handler(self) -> None:
        """Set up run log file handler, rolling prior logs over when asked."""
        log_path = Path(self.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        had_content = log_path.is_file() and log_path.stat().st_size > 0

        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=self.max_bytes,
            backupCount=self.backup_count
        )
        if self.rotate_on_start and had_content:
            file_handler.doRollover()
        file_handler.setLevel(self.log_level)

        if self.use_json:
            formatter = JsonFormatter()
        else:
            formatter = logging.Formatter(fmt=RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT)

        file_handler.setFormatter(formatter)
        self.logger.addHandler(file_handler)

    def _setup_syslog_handler(self) -> None:
        """Set up syslog logging handler."""
        try:
            syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
            syslog_handler.setLevel(self.log_level)

            formatter = logging.Formatter(
                fmt='%(name)s[%(process)d]: %(levelname)s - %(message)s'
            )
            syslog_handler.setFormatter(formatter)
            self.logger.addHandler(syslog_handler)

        except OSError as e:
            sys.stderr.write(f"Warning: Could not set up syslog handler: {e}\n")


def setup_logging(
    config: Dict[str, Any],
    log_file: Optional[str] = None,
    rotate_on_start: bool = False
) -> LogManager:
    """
    Set up logging configuration.

    Args:
        config: Configuration dictionary
        log_file: Optional run log file
        rotate_on_start: Roll the existing log over first

    Returns:
        The LogManager, whose ``collector`` holds this run's log lines
    """
    manager = LogManager(config, log_file=log_file, rotate_on_start=rotate_on_start)
    manager.setup()
    return manager
