"""
Configuration loading for Arclift.

Values are resolved in this order (later wins):
1. Built-in defaults
2. YAML config file
3. ARCLIFT_* environment variables, e.g. ARCLIFT_S3_ACCESS_KEY or
   ARCLIFT_BACKUP_RETENTION_COUNT
"""

import os
import copy
import socket
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from arclift.backup.compression import FORMAT_EXTENSIONS
from arclift.backup.keys import DEFAULT_DATE_TIME_LAYOUT

logger = logging.getLogger(__name__)

PROGRAM_IDENTIFIER = 'arclift'
CONFIG_FILE_NAME = 'config.yaml'
ENV_PREFIX = 'ARCLIFT'

DEFAULT_RETENTION_COUNT = 30
DEFAULT_CRON = '0 0 * * *'

LOG_LEVELS = ('debug', 'info', 'warning', 'error')
LOG_MODES = ('text', 'json')
STORAGE_BACKENDS = ('s3', 'local')


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass
class S3Config:
    endpoint: str = ''
    region: str = ''
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    prefix: str = ''


@dataclass
class StorageConfig:
    backend: str = 's3'
    local_path: str = ''


@dataclass
class GPGConfig:
    key_server: str = ''
    key_id: str = ''


@dataclass
class EncryptionConfig:
    enabled: bool = False
    gpg: GPGConfig = field(default_factory=GPGConfig)


@dataclass
class BackupConfig:
    dirs: List[str] = field(default_factory=list)
    hostname: str = ''
    retention_count: int = DEFAULT_RETENTION_COUNT
    date_time_layout: str = DEFAULT_DATE_TIME_LAYOUT
    cron: str = DEFAULT_CRON
    archive_dirs: bool = False
    archive_format: str = 'zip'
    temp_dir: str = ''
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)

    def validate(self):
        if not self.dirs:
            raise ConfigError("backup.dirs is required")

        if self.retention_count <= 0:
            raise ConfigError("backup.retention-count must be greater than 0")

        if not self.cron:
            raise ConfigError("backup.cron is required")

        if self.archive_format not in FORMAT_EXTENSIONS:
            raise ConfigError(
                f"Invalid backup.archive-format: {self.archive_format}. "
                f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
            )

        # Encryption only operates on archives
        if self.encryption.enabled and not self.archive_dirs:
            logger.warning("Backup encryption is only available when archive dirs are enabled. Disabling encryption")
            self.encryption.enabled = False
        elif self.encryption.enabled:
            if not self.encryption.gpg.key_server or not self.encryption.gpg.key_id:
                logger.error("Encryption is enabled but GPG key server or key ID is missing. Disabling encryption")
                self.encryption.enabled = False


@dataclass
class DiscordNotifierConfig:
    enabled: bool = False
    webhook: str = ''

    def validate(self):
        if self.enabled and not self.webhook:
            logger.warning("Discord notifier is enabled but webhook is not set. Disabling Discord notifier")
            self.enabled = False


@dataclass
class NotifiersConfig:
    enabled: bool = False
    discord: DiscordNotifierConfig = field(default_factory=DiscordNotifierConfig)


@dataclass
class LoggerConfig:
    level: str = 'info'
    mode: str = 'text'
    file: str = ''

    def validate(self):
        if self.level.lower() not in LOG_LEVELS:
            raise ConfigError(f"Invalid logger level: {self.level}")
        if self.mode.lower() not in LOG_MODES:
            raise ConfigError(f"Invalid logger mode: {self.mode}")


@dataclass
class Config:
    """Complete program configuration."""
    s3: S3Config = field(default_factory=S3Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    notifiers: NotifiersConfig = field(default_factory=NotifiersConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    source: Optional[str] = None

    def validate(self):
        """
        Validate and normalize the configuration.

        Some inconsistencies (encryption without archiving, Discord without a
        webhook) are corrected by disabling the feature instead of failing.

        Raises:
            ConfigError: If the configuration is unusable
        """
        self.logger.validate()
        self.backup.validate()
        self.notifiers.discord.validate()

        if self.storage.backend not in STORAGE_BACKENDS:
            raise ConfigError(f"Unsupported storage backend: {self.storage.backend}")
        if self.storage.backend == 'local' and not self.storage.local_path:
            raise ConfigError("storage.local-path is required for the local backend")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Build a Config from a dict using the YAML (dash-separated) key names."""
        data = _normalize_keys(data)
        backup = dict(data.get('backup', {}))
        encryption = dict(backup.pop('encryption', {}))
        notifiers = dict(data.get('notifiers', {}))

        return cls(
            s3=S3Config(**data.get('s3', {})),
            storage=StorageConfig(**data.get('storage', {})),
            backup=BackupConfig(
                encryption=EncryptionConfig(
                    enabled=encryption.get('enabled', False),
                    gpg=GPGConfig(**encryption.get('gpg', {}))
                ),
                **backup
            ),
            notifiers=NotifiersConfig(
                enabled=notifiers.get('enabled', False),
                discord=DiscordNotifierConfig(**notifiers.get('discord', {}))
            ),
            logger=LoggerConfig(**data.get('logger', {}))
        )


def default_values() -> Dict[str, Any]:
    """Defaults keyed the way they appear in the YAML file."""
    return {
        's3': {
            'endpoint': '',
            'region': '',
            'access-key': '',
            'secret-key': '',
            'bucket': '',
            'prefix': '',
        },
        'storage': {
            'backend': 's3',
            'local-path': '',
        },
        'backup': {
            'dirs': [],
            'hostname': socket.gethostname(),
            'retention-count': DEFAULT_RETENTION_COUNT,
            'date-time-layout': DEFAULT_DATE_TIME_LAYOUT,
            'cron': DEFAULT_CRON,
            'archive-dirs': False,
            'archive-format': 'zip',
            'temp-dir': '',
            'encryption': {
                'enabled': False,
                'gpg': {
                    'key-server': '',
                    'key-id': '',
                },
            },
        },
        'notifiers': {
            'enabled': False,
            'discord': {
                'enabled': False,
                'webhook': '',
            },
        },
        'logger': {
            'level': 'info',
            'mode': 'text',
            'file': '',
        },
    }


def default_config_dir() -> str:
    base = os.environ.get('XDG_CONFIG_HOME') or os.path.join(os.path.expanduser('~'), '.config')
    return os.path.join(base, PROGRAM_IDENTIFIER)


def find_config_file(path: Optional[str] = None) -> Optional[str]:
    """
    Locate the config file.

    Args:
        path: Explicit path (must exist if given)

    Returns:
        Path of the config file, or None if none was found

    Raises:
        ConfigError: If an explicit path doesn't exist
    """
    if path:
        if not os.path.isfile(path):
            raise ConfigError(f"Config file not found: {path}")
        return path

    for candidate in (os.path.join(os.getcwd(), CONFIG_FILE_NAME),
                      os.path.join(default_config_dir(), CONFIG_FILE_NAME)):
        if os.path.isfile(candidate):
            return candidate

    return None


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None,
                validate: bool = True) -> Config:
    """
    Load, merge and validate the configuration.

    Args:
        path: Optional explicit config file path
        environ: Environment mapping (defaults to os.environ)
        validate: Run Config.validate() before returning

    Returns:
        Config (validated unless validate is False)

    Raises:
        ConfigError: If the file is unreadable or the result is invalid
    """
    environ = os.environ if environ is None else environ
    defaults = default_values()
    values = copy.deepcopy(defaults)

    config_file = find_config_file(path)
    if config_file:
        logger.info(f"Using config file: {config_file}")
        try:
            with open(config_file, 'r') as f:
                file_values = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config file {config_file}: {e}")
        if not isinstance(file_values, dict):
            raise ConfigError(f"Config file {config_file} must contain a mapping")
        _deep_merge(values, file_values)
        _check_types(values, defaults)
    else:
        logger.warning("No config file found, relying on env vars/defaults")

    _apply_env(values, defaults, environ)

    try:
        config = Config.from_dict(values)
    except TypeError as e:
        raise ConfigError(f"Unknown configuration key: {e}")

    config.source = config_file
    if validate:
        config.validate()
    return config


def generate_config_file(path: Optional[str] = None, force: bool = False) -> str:
    """
    Write a config file populated with the defaults.

    Args:
        path: Destination (defaults to the user config directory)
        force: Overwrite an existing file

    Returns:
        Path of the written file

    Raises:
        ConfigError: If the file exists and force is False, or can't be written
    """
    path = path or os.path.join(default_config_dir(), CONFIG_FILE_NAME)

    if os.path.exists(path) and not force:
        raise ConfigError(f"Config file already exists: {path}")

    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(default_values(), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigError(f"Failed to write config file {path}: {e}")

    return path


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key.replace('-', '_'): _normalize_keys(value) if isinstance(value, dict) else value
        for key, value in data.items()
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]):
    for key, value in override.items():
        # An empty section (all children commented out) loads as None
        if value is None and isinstance(base.get(key), dict):
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def _check_types(values: Dict[str, Any], defaults: Dict[str, Any], path: tuple = ()):
    """Coerce file values to the type of their default, or raise ConfigError."""
    for key, default in defaults.items():
        if key not in values:
            continue

        value = values[key]
        name = '.'.join(path + (key,))

        if isinstance(default, dict):
            if not isinstance(value, dict):
                raise ConfigError(f"{name} must be a mapping, got {type(value).__name__}")
            _check_types(value, default, path + (key,))
        elif value is None:
            values[key] = copy.deepcopy(default)
        elif isinstance(value, str) and not isinstance(default, str):
            values[key] = _coerce(value, default, name)
        elif isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be a boolean, got {value!r}")
        elif isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
        elif isinstance(default, list):
            if not isinstance(value, list) or any(isinstance(item, (dict, list)) for item in value):
                raise ConfigError(f"{name} must be a list, got {value!r}")
            values[key] = [str(item) for item in value]
        elif isinstance(default, str):
            if isinstance(value, (dict, list)):
                raise ConfigError(f"{name} must be a string, got {value!r}")
            values[key] = str(value)


def _apply_env(values: Dict[str, Any], defaults: Dict[str, Any], environ, path: tuple = ()):
    for key, default in defaults.items():
        current_path = path + (key,)
        if isinstance(default, dict):
            values.setdefault(key, {})
            _apply_env(values[key], default, environ, current_path)
            continue

        env_name = '_'.join([ENV_PREFIX] + [p.upper().replace('-', '_') for p in current_path])
        if env_name in environ:
            values[key] = _coerce(environ[env_name], default, env_name)


def _coerce(raw: str, default: Any, name: str) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if isinstance(default, list):
        return [item.strip() for item in raw.split(',') if item.strip()]
    return raw
