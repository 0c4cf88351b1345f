"""
Retention policy for backup snapshots.

Decides whether a new backup is due and which snapshot has to be evicted
to stay within the maximum snapshot count. Pure decision logic: nothing in
this module talks to the remote.
"""

from datetime import datetime, timedelta
from typing import Optional

from .catalog import Snapshot, SnapshotCatalog


def is_backup_due(catalog: SnapshotCatalog, max_age: timedelta, now: datetime) -> bool:
    """
    Check whether a new backup is due.

    A backup is due when there is no snapshot yet, or when the most recent
    one is strictly older than max_age. Exactly max_age old is not due.
    """
    if catalog.is_empty():
        return True
    return now - catalog.most_recent().created_at > max_age


def eviction_target(catalog: SnapshotCatalog, max_count: int) -> Optional[Snapshot]:
    """
    Pick the snapshot to delete before a new backup is added.

    Returns:
        The oldest snapshot if the catalog holds max_count or more, else None
    """
    if max_count < 1:
        raise ValueError(f"max_count must be at least 1, got {max_count}")

    if catalog.count() >= max_count:
        return catalog.oldest()
    return None


class RetentionPolicy:
    """
    Retention thresholds for one remote base.

    max_age is the minimum time between backups, max_count the number of
    snapshots kept once a new one has landed.
    """

    def __init__(self, max_age: timedelta, max_count: int):
        if max_count < 1:
            raise ValueError(f"max_count must be at least 1, got {max_count}")
        if max_age < timedelta(0):
            raise ValueError(f"max_age must not be negative, got {max_age}")

        self.max_age = max_age
        self.max_count = max_count

    @classmethod
    def from_days(cls, max_days: int, max_count: int) -> 'RetentionPolicy':
        return cls(timedelta(days=max_days), max_count)

    def is_backup_due(self, catalog: SnapshotCatalog, now: datetime) -> bool:
        return is_backup_due(catalog, self.max_age, now)

    def eviction_target(self, catalog: SnapshotCatalog) -> Optional[Snapshot]:
        return eviction_target(catalog, self.max_count)

    def age_of_latest(self, catalog: SnapshotCatalog, now: datetime) -> Optional[timedelta]:
        """Age of the most recent snapshot, or None for an empty catalog."""
        if catalog.is_empty():
            return None
        return now - catalog.most_recent().created_at

    def __repr__(self) -> str:
        return f"RetentionPolicy(max_age={self.max_age!r}, max_count={self.max_count})"
