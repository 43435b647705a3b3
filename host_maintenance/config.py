"""
Configuration management for host-maintenance.

This module handles loading, validation, and management of configuration settings
from multiple sources including files, environment variables, and defaults.

The merged configuration is built once at process start and handed to each
runner explicitly; nothing else in the package reads configuration globally.
"""

import os
import re
import json
import getpass
import logging
import socket
from pathlib import Path
from copy import deepcopy
from typing import Dict, Any, Optional, List

import yaml
from jsonschema import validate, ValidationError

logger = logging.getLogger(__name__)

# Default configuration values. Empty strings are resolved from other keys
# once every source has been merged (see ConfigurationManager._resolve_derived).
DEFAULT_CONFIG = {
    # Identity
    "EMAIL": "root@localhost",
    "HOSTNAME": "",
    "BACKUP_USER": "",
    "BACKUP_HOME": "",

    # Email transport
    "MSMTP_BINARY": "msmtp",
    "MSMTP_CONFIG": "",
    "MSMTP_ACCOUNT": "default",

    # Cloud remote
    "RCLONE_BINARY": "rclone",
    "RCLONE_CONFIG": "",
    "BACKUP_REMOTE": "gdrive",
    "CLOUD_FOLDER": "",

    # Backup settings
    "BACKUP_EXCLUDES": [
        "{home}/Downloads",
        "{home}/.cache",
        "{home}/.config/chromium",
        "/proc",
        "/sys",
        "/dev",
        "/tmp",
        "/run",
        "/var/cache",
        "/var/tmp",
        "/var/lib/plexmediaserver"
    ],
    "JOURNAL_VACUUM_TIME": "3d",
    "BACKUP_LOG_FILE": "",

    # Update settings
    "UPDATE_LOG_FILE": "",
    "MAX_LOG_FILES": 3,
    "DISK_WARN_THRESHOLD": 90,
    "MIN_FREE_SPACE_KB": 500000,
    "MAX_RETRIES": 3,
    "RETRY_DELAY": 5,
    "NETWORK_CHECK_URL": "http://deb.debian.org/debian/",
    "NETWORK_CHECK_ATTEMPTS": 5,
    "NETWORK_CHECK_DELAY": 5,
    "NETWORK_CHECK_TIMEOUT": 10,
    "REBOOT_REQUIRED_FILE": "/var/run/reboot-required",
    "REBOOT_DELAY": "+1",
    "SHUTDOWN_BINARY": "/sbin/shutdown",
    "DPKG_LOG": "/var/log/dpkg.log",

    # Runtime state
    "LOCK_DIR": "/run/lock",
    "STATE_DIR": "/var/lib/host-maintenance",

    # Logging configuration
    "LOG_LEVEL": "INFO",
    "MAX_LOG_SIZE": 0,    # 0 disables size-based rotation
    "LOG_JSON": False,
    "USE_SYSLOG": False,
    "LOG_COLORS": True
}

CONFIG_SCHEMA = {
    "type": "object",
    "required": ["EMAIL", "BACKUP_REMOTE"],
    "properties": {
        "EMAIL": {"type": "string", "minLength": 3},
        "HOSTNAME": {"type": "string"},
        "BACKUP_USER": {"type": "string"},
        "BACKUP_HOME": {"type": "string"},
        "MSMTP_BINARY": {"type": "string", "minLength": 1},
        "MSMTP_CONFIG": {"type": "string"},
        "MSMTP_ACCOUNT": {"type": "string", "minLength": 1},
        "RCLONE_BINARY": {"type": "string", "minLength": 1},
        "RCLONE_CONFIG": {"type": "string"},
        "BACKUP_REMOTE": {"type": "string", "minLength": 1},
        "CLOUD_FOLDER": {"type": "string"},
        "BACKUP_EXCLUDES": {"type": "array", "items": {"type": "string"}},
        "JOURNAL_VACUUM_TIME": {"type": "string", "pattern": r"^\d+[smhdw]?$"},
        "BACKUP_LOG_FILE": {"type": "string"},
        "UPDATE_LOG_FILE": {"type": "string"},
        "MAX_LOG_FILES": {"type": "integer", "minimum": 1},
        "DISK_WARN_THRESHOLD": {"type": "number", "minimum": 0, "maximum": 100},
        "MIN_FREE_SPACE_KB": {"type": "integer", "minimum": 0},
        "MAX_RETRIES": {"type": "integer", "minimum": 1},
        "RETRY_DELAY": {"type": "number", "minimum": 0},
        "NETWORK_CHECK_URL": {"type": "string", "pattern": "^https?://"},
        "NETWORK_CHECK_ATTEMPTS": {"type": "integer", "minimum": 1},
        "NETWORK_CHECK_DELAY": {"type": "number", "minimum": 0},
        "NETWORK_CHECK_TIMEOUT": {"type": "number", "exclusiveMinimum": 0},
        "REBOOT_REQUIRED_FILE": {"type": "string", "minLength": 1},
        "REBOOT_DELAY": {"type": "string", "minLength": 1},
        "SHUTDOWN_BINARY": {"type": "string", "minLength": 1},
        "DPKG_LOG": {"type": "string"},
        "LOCK_DIR": {"type": "string", "minLength": 1},
        "STATE_DIR": {"type": "string", "minLength": 1},
        "LOG_LEVEL": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "MAX_LOG_SIZE": {"type": "integer", "minimum": 0},
        "LOG_JSON": {"type": "boolean"},
        "USE_SYSLOG": {"type": "boolean"},
        "LOG_COLORS": {"type": "boolean"}
    }
}

ENV_PREFIX = "HOSTMAINT_"

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+$')


class ConfigurationError(Exception):
    """Base exception for configuration-related errors."""
    pass


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""
    pass


class ConfigurationManager:
    """Manages loading and validation of configuration settings."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = deepcopy(DEFAULT_CONFIG)
        self._load_paths = self._get_config_paths()

    def load_config(self) -> Dict[str, Any]:
        """
        Load and validate configuration from all sources.

        Returns:
            Dict containing merged configuration

        Raises:
            ConfigurationError: If configuration cannot be loaded or validated
        """
        if self.config_path:
            self._load_from_file(self.config_path)
        else:
            self._load_from_first_available()

        self._load_from_env()
        self._resolve_derived()
        self._validate_config()

        return self.config

    def _get_config_paths(self) -> List[Path]:
        """Get list of standard configuration file locations."""
        return [
            Path.cwd() / "config.json",
            Path.home() / ".config" / "host-maintenance" / "config.json",
            Path("/etc/host-maintenance/config.json"),
            Path("/etc/host-maintenance/config.yaml")
        ]

    def _load_from_first_available(self) -> None:
        """Load configuration from first available standard location."""
        for path in self._load_paths:
            if path.is_file():
                try:
                    self._load_from_file(str(path))
                    logger.info(f"Loaded configuration from {path}")
                    return
                except ConfigurationError as e:
                    logger.warning(f"Failed to load config from {path}: {e}")

        logger.debug("No configuration file found in standard locations, using defaults")

    def _load_from_file(self, path: str) -> None:
        """
        Load configuration from specified file.

        YAML is used for ``.yaml``/``.yml`` files, JSON for everything else.

        Raises:
            ConfigurationError: If file cannot be loaded
        """
        try:
            with open(path) as f:
                if Path(path).suffix in ('.yaml', '.yml'):
                    file_config = yaml.safe_load(f) or {}
                else:
                    file_config = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading configuration file: {e}")

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
        self.config.update(file_config)

    def _load_from_env(self) -> None:
        """Load configuration from environment variables."""
        for key, value in os.environ.items():
            if key.startswith(ENV_PREFIX):
                config_key = key[len(ENV_PREFIX):]
                try:
                    # Try to parse as JSON for complex values
                    self.config[config_key] = json.loads(value)
                except json.JSONDecodeError:
                    self.config[config_key] = value

    def _resolve_derived(self) -> None:
        """Fill values left empty from identity settings."""
        cfg = self.config
        if not cfg.get('HOSTNAME'):
            cfg['HOSTNAME'] = socket.gethostname()
        if not cfg.get('BACKUP_USER'):
            cfg['BACKUP_USER'] = os.environ.get('SUDO_USER') or getpass.getuser()
        if not cfg.get('BACKUP_HOME'):
            user = cfg['BACKUP_USER']
            cfg['BACKUP_HOME'] = '/root' if user == 'root' else f"/home/{user}"

        home = Path(cfg['BACKUP_HOME'])
        host = cfg['HOSTNAME']
        derived = {
            'MSMTP_CONFIG': home / '.msmtprc',
            'RCLONE_CONFIG': home / '.config' / 'rclone' / 'rclone.conf',
            'CLOUD_FOLDER': f"pi_backups_{host}",
            'BACKUP_LOG_FILE': home / f"{host}_backup.log",
            'UPDATE_LOG_FILE': home / 'update-and-restart.log'
        }
        for key, value in derived.items():
            if not cfg.get(key):
                cfg[key] = str(value)

    def _validate_config(self) -> None:
        """
        Validate configuration settings.

        Raises:
            ConfigValidationError: If validation fails
        """
        try:
            validate(instance=self.config, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            location = '.'.join(str(p) for p in e.absolute_path) or 'config'
            raise ConfigValidationError(f"Invalid value for {location}: {e.message}")

        self._validate_email()
        self._validate_paths()

    def _validate_email(self) -> None:
        if not EMAIL_PATTERN.match(self.config['EMAIL']):
            raise ConfigValidationError(f"Invalid email address: {self.config['EMAIL']}")

    def _validate_paths(self) -> None:
        """Require absolute paths for everything written by the runners."""
        for key in ('BACKUP_HOME', 'BACKUP_LOG_FILE', 'UPDATE_LOG_FILE',
                    'LOCK_DIR', 'STATE_DIR'):
            if not os.path.isabs(self.config[key]):
                raise ConfigValidationError(f"{key} must be an absolute path: {self.config[key]}")

    def generate_example_config(self, output_path: str) -> None:
        """
        Generate example configuration file.

        Args:
            output_path: Path to write example configuration
        """
        example_config = deepcopy(DEFAULT_CONFIG)
        example_config.update({
            'EMAIL': 'your-email@example.com',
            'BACKUP_USER': 'pi',
            'BACKUP_HOME': '/home/pi'
        })

        try:
            parent = os.path.dirname(output_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(output_path, 'w') as f:
                json.dump(example_config, f, indent=2)
            logger.info(f"Example configuration written to {output_path}")
        except OSError as e:
            raise ConfigurationError(f"Error writing example configuration: {e}")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from specified path or search standard locations.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Dict containing configuration settings

    Raises:
        ConfigurationError: If configuration cannot be loaded
    """
    manager = ConfigurationManager(config_path)
    return manager.load_config()
