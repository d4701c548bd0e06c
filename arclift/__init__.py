import json
import logging
from logging.handlers import RotatingFileHandler

__version__ = '1.0.0'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


class JSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record):
        entry = {
            'time': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level='info', mode='text', log_file=None):
    """Configure application logging"""

    log_level = LOG_LEVELS.get(level.lower(), logging.INFO)

    if mode == 'json':
        console_formatter = JSONFormatter()
        file_formatter = JSONFormatter()
    else:
        console_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
        )
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto is very chatty at debug level
    for noisy in ('boto3', 'botocore', 's3transfer', 'urllib3', 'gnupg'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(log_level)}, mode: {mode})")


def create_backup_manager(config):
    """
    Wire storage, notifiers and the backup manager for a loaded config.

    Args:
        config: Validated Config

    Returns:
        BackupManager with an initialized storage session

    Raises:
        StorageError: If the storage session cannot be established
        NotificationError: If a configured notifier cannot be created
    """
    from arclift.backup.executor import BackupManager
    from arclift.backup.storage import create_storage
    from arclift.notifiers import NotifierStore

    store = create_storage(config)
    store.init()

    notifier_store = NotifierStore(config)
    notifier_store.init_store()

    return BackupManager(config, store, notifier_store)
