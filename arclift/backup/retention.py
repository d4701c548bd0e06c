"""
Count based retention for stored backups.

Backups are ranked purely by their timestamp key: the newest N are kept and
everything older is removed.
"""

from typing import List, Sequence, Tuple


def split_retention(keys: Sequence[str], retention_count: int) -> Tuple[List[str], List[str]]:
    """
    Return (keep, delete) lists for keys sorted newest first.

    Args:
        keys: Backup timestamps in descending order
        retention_count: Number of newest backups to keep

    Returns:
        Tuple[List[str], List[str]]: Keep and delete lists

    Raises:
        ValueError: If retention_count is not positive
    """
    if retention_count <= 0:
        raise ValueError(f"retention_count must be greater than 0, got {retention_count}")

    keys = list(keys)
    if len(keys) <= retention_count:
        return keys, []

    return keys[:retention_count], keys[retention_count:]
