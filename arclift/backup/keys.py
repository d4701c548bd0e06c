"""
Storage key helpers.

Every backup lives under a key of the form:
{prefix}/{hostname}/{timestamp}

The timestamp segment is what gets listed, sorted and deleted.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATE_TIME_LAYOUT = '%Y%m%d%H%M%S'


def build_key(*parts: str) -> str:
    """
    Join key segments with '/', skipping empty ones.

    Args:
        parts: Key segments (leading/trailing slashes are stripped)

    Returns:
        Joined key
    """
    segments = [part.strip('/') for part in parts if part and part.strip('/')]
    return '/'.join(segments)


def root_key(prefix: str, hostname: str) -> str:
    """Key under which all backups of one host are stored."""
    return build_key(prefix, hostname)


def timestamped_key(prefix: str, hostname: str,
                    layout: str = DEFAULT_DATE_TIME_LAYOUT,
                    now: Optional[datetime] = None) -> str:
    """
    Build a new backup key for the current moment.

    Args:
        prefix: Configured key prefix (may be empty)
        hostname: Host identifier
        layout: strftime layout for the timestamp segment
        now: Override current time (UTC is used by default)

    Returns:
        Key like 'prefix/hostname/20240101000000'
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return build_key(prefix, hostname, now.strftime(layout))


def strip_prefix(keys: List[str], root: str) -> List[str]:
    """
    Remove the root key from each key, leaving only the timestamp segment.

    Args:
        keys: Full keys
        root: Root key as returned by root_key()

    Returns:
        List of timestamp segments in the same order
    """
    root = root.strip('/')
    stripped = []
    for key in keys:
        key = key.strip('/')
        if root and key.startswith(root + '/'):
            key = key[len(root) + 1:]
        stripped.append(key)
    return stripped


def sort_timestamps(timestamps: List[str], layout: str = DEFAULT_DATE_TIME_LAYOUT) -> List[str]:
    """
    Sort timestamp segments newest first.

    Entries that don't match the layout are dropped so that retention never
    touches objects it did not create.

    Args:
        timestamps: Timestamp segments
        layout: strftime layout used when the keys were created

    Returns:
        Timestamps in descending chronological order
    """
    parsed = []
    for value in timestamps:
        try:
            parsed.append((datetime.strptime(value, layout), value))
        except ValueError:
            logger.warning(f"Ignoring key not matching layout {layout!r}: {value}")

    parsed.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [value for _, value in parsed]
