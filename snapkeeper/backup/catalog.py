"""
Snapshot catalog.

A snapshot is one backup run on the remote, stored as a directory named
bak_{YYYY-MM-DD_HH-MM-SS}. The fixed-width timestamp makes lexical order
equal to chronological order, so the catalog simply sorts names.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, List

from .storage import RemoteUnavailableError


logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = 'bak_'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


class CatalogError(Exception):
    """Base class for catalog errors."""
    pass


class MalformedSnapshotNameError(CatalogError):
    """Raised when a remote directory name is not a valid snapshot name."""
    pass


class EmptyCatalogError(CatalogError):
    """Raised when asking an empty catalog for a snapshot."""
    pass


@dataclass(frozen=True, order=True)
class Snapshot:
    name: str
    created_at: datetime


def format_snapshot_name(moment: datetime) -> str:
    """Snapshot name for a run started at `moment`."""
    return f"{SNAPSHOT_PREFIX}{moment.strftime(TIMESTAMP_FORMAT)}"


def parse_snapshot_name(name: str) -> Snapshot:
    """
    Parse a snapshot directory name.

    Args:
        name: Directory name, optionally with a trailing slash

    Returns:
        Snapshot with its creation time

    Raises:
        MalformedSnapshotNameError: If the prefix is missing or the timestamp is invalid
    """
    name = name.strip().rstrip('/')

    if not name.startswith(SNAPSHOT_PREFIX):
        raise MalformedSnapshotNameError(f"Not a snapshot name: {name!r}")

    timestamp = name[len(SNAPSHOT_PREFIX):]
    try:
        created_at = datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    except ValueError as e:
        raise MalformedSnapshotNameError(f"Invalid snapshot timestamp in {name!r}: {e}")

    # strptime accepts non-padded fields; only the canonical form sorts correctly
    if created_at.strftime(TIMESTAMP_FORMAT) != timestamp:
        raise MalformedSnapshotNameError(f"Non-canonical snapshot timestamp in {name!r}")

    return Snapshot(name=name, created_at=created_at)


class SnapshotCatalog:
    """
    Snapshots found at a remote base, sorted oldest first.

    Built fresh for every run; nothing is cached between runs.
    """

    def __init__(self, snapshots: Iterable[Snapshot] = ()):
        self._snapshots = sorted(snapshots, key=lambda snapshot: snapshot.name)

    @classmethod
    def from_names(cls, names: Iterable[str], skip_malformed: bool = False) -> 'SnapshotCatalog':
        """
        Build a catalog from raw directory names.

        Args:
            names: Directory names as listed on the remote
            skip_malformed: Drop malformed names with a warning instead of failing

        Raises:
            MalformedSnapshotNameError: On the first malformed name, unless skip_malformed
        """
        snapshots = []

        for name in names:
            if not name.strip():
                continue
            try:
                snapshots.append(parse_snapshot_name(name))
            except MalformedSnapshotNameError as e:
                if not skip_malformed:
                    raise
                logger.warning(f"Ignoring remote directory: {e}")

        return cls(snapshots)

    @classmethod
    def load(cls, storage, remote_base: str, skip_malformed: bool = False) -> 'SnapshotCatalog':
        """
        List the remote base and build the catalog.

        Args:
            storage: Storage handler providing list_snapshots()
            remote_base: Remote base path holding the snapshots
            skip_malformed: Drop malformed names with a warning instead of failing

        Raises:
            RemoteUnavailableError: If the listing fails
            MalformedSnapshotNameError: If a name is malformed and skip_malformed is off
        """
        names = storage.list_snapshots(remote_base)
        if names is None:
            raise RemoteUnavailableError(f"No listing returned for {remote_base}")

        catalog = cls.from_names(names, skip_malformed=skip_malformed)
        logger.debug(f"Catalog loaded: {catalog.count()} snapshots at {remote_base}")
        return catalog

    def most_recent(self) -> Snapshot:
        if not self._snapshots:
            raise EmptyCatalogError("No snapshots in catalog")
        return self._snapshots[-1]

    def oldest(self) -> Snapshot:
        if not self._snapshots:
            raise EmptyCatalogError("No snapshots in catalog")
        return self._snapshots[0]

    def count(self) -> int:
        return len(self._snapshots)

    @property
    def names(self) -> List[str]:
        return [snapshot.name for snapshot in self._snapshots]

    def is_empty(self) -> bool:
        return not self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(self._snapshots)

    def __getitem__(self, index) -> Snapshot:
        return self._snapshots[index]

    def __repr__(self) -> str:
        return f"SnapshotCatalog({self.names!r})"
