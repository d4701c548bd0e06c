"""
Discord webhook notifier.
"""

import logging

import requests

from . import Notifier, NotificationError

logger = logging.getLogger(__name__)

SUCCESS_COLOR = 1498748
FAILURE_COLOR = 14554702
DELETION_FAILURE_COLOR = 14590998

USERNAME = 'Arclift'
REQUEST_TIMEOUT = 10


class DiscordNotifier(Notifier):
    """Posts backup events as embeds to a Discord webhook."""

    def __init__(self, config, session: requests.Session = None):
        """
        Args:
            config: Loaded Config (uses notifiers.discord and backup.hostname)
            session: Optional requests session (shared across calls)

        Raises:
            NotificationError: If no webhook URL is configured
        """
        if not config.notifiers.discord.webhook:
            raise NotificationError("Discord webhook URL is not configured")

        self.config = config
        self.webhook = config.notifiers.discord.webhook
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return self.config.notifiers.discord.enabled

    @property
    def hostname(self) -> str:
        return self.config.backup.hostname

    def notify_backup_success(self, directory, total_dirs, total_files, success_files, key):
        embed = {
            'title': 'Directory',
            'description': directory,
            'color': SUCCESS_COLOR,
            'fields': [
                {'name': 'Key', 'value': key, 'inline': False},
                {'name': 'Dirs', 'value': str(total_dirs), 'inline': True},
                {'name': 'Files', 'value': f"{success_files}/{total_files}", 'inline': True},
            ]
        }
        self._send(f"**Backup Successful** - *{self.hostname}*", embed)

    def notify_backup_failure(self, directory, total_dirs, total_files, error):
        embed = {
            'title': 'Error',
            'description': str(error),
            'color': FAILURE_COLOR,
            'fields': [
                {'name': 'Directory', 'value': directory, 'inline': False},
                {'name': 'Dirs', 'value': str(total_dirs), 'inline': True},
                {'name': 'Files', 'value': str(total_files), 'inline': True},
            ]
        }
        self._send(f"**Backup Failed** - *{self.hostname}*", embed)

    def notify_backup_delete_failure(self, key, error):
        embed = {
            'title': 'Error',
            'description': str(error),
            'color': DELETION_FAILURE_COLOR,
            'fields': [
                {'name': 'Key', 'value': key, 'inline': False},
            ]
        }
        self._send(f"**Backup Deletion Failed** - *{self.hostname}*", embed)

    def _send(self, content: str, embed: dict):
        payload = {
            'username': USERNAME,
            'content': content,
            'embeds': [embed],
            'components': []
        }
        try:
            response = self.session.post(self.webhook, json=payload, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Failed to send Discord notification: {e}")
        logger.debug(f"Discord notification sent: {content}")
