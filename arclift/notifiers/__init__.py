"""
Backup event notifications.

A NotifierStore broadcasts each event to every registered notifier. Delivery
is fire-and-forget: failures are logged and never reach the caller.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


class Notifier(ABC):
    """A single notification channel."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether this channel should receive events."""

    @abstractmethod
    def notify_backup_success(self, directory: str, total_dirs: int, total_files: int,
                              success_files: int, key: str):
        """Report a directory that was backed up."""

    @abstractmethod
    def notify_backup_failure(self, directory: str, total_dirs: int, total_files: int,
                              error: Exception):
        """Report a directory whose backup failed."""

    @abstractmethod
    def notify_backup_delete_failure(self, key: str, error: Exception):
        """Report a backup that could not be purged."""


class NotifierStore:
    """
    Broadcasts events to all registered notifiers.

    Registration is serialized; delivery is not, so every notifier must be
    safe to call from several threads.
    """

    def __init__(self, config):
        """
        Args:
            config: Loaded Config (uses config.notifiers)
        """
        self.config = config
        self._lock = threading.Lock()
        self._notifiers: List[Notifier] = []

    @property
    def enabled(self) -> bool:
        return self.config.notifiers.enabled

    @property
    def notifiers(self) -> List[Notifier]:
        return list(self._notifiers)

    def register(self, notifier: Notifier):
        with self._lock:
            self._notifiers.append(notifier)

    def init_store(self):
        """
        Register every notifier enabled in the configuration.

        Raises:
            NotificationError: If a notifier cannot be created
        """
        from .discord import DiscordNotifier

        if self.config.notifiers.discord.enabled:
            self.register(DiscordNotifier(self.config))
            logger.info("Discord notifier registered")

    def notify_backup_success(self, directory: str, total_dirs: int, total_files: int,
                              success_files: int, key: str):
        self._broadcast(
            'notify_backup_success',
            directory, total_dirs, total_files, success_files, key
        )

    def notify_backup_failure(self, directory: str, total_dirs: int, total_files: int,
                              error: Exception):
        self._broadcast('notify_backup_failure', directory, total_dirs, total_files, error)

    def notify_backup_delete_failure(self, key: str, error: Exception):
        self._broadcast('notify_backup_delete_failure', key, error)

    def _broadcast(self, method: str, *args):
        if not self.enabled:
            logger.debug(f"Notifiers are disabled; skipping {method}")
            return

        for notifier in self.notifiers:
            if not notifier.enabled:
                logger.debug(f"{type(notifier).__name__} disabled; skipping {method}")
                continue
            try:
                getattr(notifier, method)(*args)
            except Exception as e:
                logger.error(f"Failed to send {method} via {type(notifier).__name__}: {e}")
