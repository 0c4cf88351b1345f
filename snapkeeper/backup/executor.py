"""
Backup orchestrator - runs one backup invocation end to end.

Workflow:
1. CHECKING: check the remote, load the snapshot catalog
2. SKIPPED: stop if the latest snapshot is still recent enough
3. EVICTING: delete the oldest snapshot if the count limit is reached
4. UPLOADING: archive (optional) and upload every path, bounded in parallel
5. COMPLETING: write the completion marker into the new snapshot
6. DONE

Only a failure while CHECKING is fatal. Path failures are isolated, eviction
and marker failures are warnings.
"""

import os
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from snapkeeper.config import RunConfig
from .catalog import SnapshotCatalog, CatalogError, format_snapshot_name
from .compression import create_archive, archive_basename, get_archive_size
from .retention import RetentionPolicy
from .storage import StorageError, create_storage, join_remote


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PATH_FAILED = 2


class RunState(enum.Enum):
    IDLE = 'idle'
    CHECKING = 'checking'
    SKIPPED = 'skipped'
    EVICTING = 'evicting'
    UPLOADING = 'uploading'
    COMPLETING = 'completing'
    DONE = 'done'


@dataclass
class JobResult:
    """Outcome of backing up one source path."""

    path: str
    destination: str
    status: str = 'pending'  # pending, success, failed, skipped
    archived: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == 'failed'


@dataclass
class RunReport:
    """Outcome of one orchestrator run."""

    remote_base: str
    dry_run: bool = False
    status: str = 'pending'  # pending, skipped, completed, failed
    state: RunState = RunState.IDLE
    snapshot_name: Optional[str] = None
    snapshot_count: int = 0
    evicted: Optional[str] = None
    jobs: List[JobResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [job for job in self.jobs if job.failed]

    @property
    def exit_code(self) -> int:
        if self.fatal_error is not None:
            return EXIT_FATAL
        if self.failed_jobs:
            return EXIT_PATH_FAILED
        return EXIT_OK


class BackupOrchestrator:
    """
    Orchestrates one backup run for a set of paths and a remote base.
    """

    def __init__(self, config: RunConfig, storage, archiver: Callable = create_archive,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize backup orchestrator.

        Args:
            config: Settings for this run
            storage: Storage handler (RcloneStorage, S3Storage or compatible)
            archiver: Function (source_dir, output_path, format) -> archive path
            clock: Returns the current local time (default: datetime.now)
        """
        self.config = config
        self.storage = storage
        self.archiver = archiver
        self.clock = clock or datetime.now
        self.policy = RetentionPolicy.from_days(config.max_days, config.max_backups)
        self.state = RunState.IDLE
        self.logs = []
        self._logs_lock = threading.Lock()
        self._permit = threading.BoundedSemaphore(config.concurrency)

    def run(self) -> RunReport:
        """
        Execute the backup run.

        Returns:
            RunReport describing every decision and outcome
        """
        with self._logs_lock:
            self.logs = []
        self.state = RunState.IDLE

        report = RunReport(remote_base=self.config.remote_base, dry_run=self.config.dry_run)
        now = self.clock()

        self._log("========= Start backup =========")
        if self.config.dry_run:
            self._log("Dry run: no remote changes will be made", logging.WARNING)

        self._set_state(RunState.CHECKING, report)
        try:
            catalog = self._load_catalog()
        except (StorageError, CatalogError) as e:
            report.fatal_error = str(e)
            report.status = 'failed'
            self._log(f"Failed to load remote backups: {e}", logging.ERROR)
            return self._finish(report)

        report.snapshot_count = catalog.count()

        if not self.policy.is_backup_due(catalog, now):
            age = self.policy.age_of_latest(catalog, now)
            days = age.total_seconds() / 86400
            self._set_state(RunState.SKIPPED, report)
            self._log(
                f"Last backup is recent: {catalog.most_recent().name}, "
                f"age = {days:.1f} days (threshold {self.config.max_days} days)"
            )
            report.status = 'skipped'
            return self._finish(report)

        self._set_state(RunState.EVICTING, report)
        self._evict(catalog, report)

        report.snapshot_name = format_snapshot_name(now)
        snapshot_path = join_remote(self.config.remote_base, report.snapshot_name)

        self._set_state(RunState.UPLOADING, report)
        report.jobs = self._upload_all(snapshot_path)

        self._set_state(RunState.COMPLETING, report)
        self._complete(snapshot_path, report)

        report.status = 'completed'
        failed = report.failed_jobs
        if failed:
            self._log(
                f"{len(failed)} of {len(report.jobs)} paths failed: "
                f"{', '.join(job.path for job in failed)}",
                logging.ERROR
            )
        return self._finish(report)

    def _load_catalog(self) -> SnapshotCatalog:
        """
        Check the remote and build the catalog.

        Raises:
            StorageError: If the remote is unavailable
            CatalogError: If a snapshot name is malformed
        """
        self.storage.check_connection(self.config.remote_base)
        catalog = SnapshotCatalog.load(
            self.storage,
            self.config.remote_base,
            skip_malformed=self.config.skip_malformed
        )
        self._log(f"Found {catalog.count()} backups at {self.config.remote_base}")
        return catalog

    def _evict(self, catalog: SnapshotCatalog, report: RunReport):
        """Delete the eviction target, if any. Failures are warnings."""
        target = self.policy.eviction_target(catalog)
        if target is None:
            self._log(f"Backup count {catalog.count()} below limit {self.config.max_backups}, nothing to delete")
            return

        self._log(f"Deleting oldest backup to maintain limit: {target.name}")

        if self.config.dry_run:
            self._log(f"Dry run: backup not deleted: {target.name}", logging.WARNING)
            return

        try:
            self.storage.delete(self.config.remote_base, target.name)
            report.evicted = target.name
        except StorageError as e:
            message = f"Failed to delete old backup {target.name}: {e}"
            report.warnings.append(message)
            self._log(message, logging.ERROR)

    def _upload_all(self, snapshot_path: str) -> List[JobResult]:
        """
        Back up every configured path on a bounded worker pool.

        Blocks until every job has finished.
        """
        with ThreadPoolExecutor(max_workers=self.config.concurrency,
                                thread_name_prefix='snapkeeper-job') as pool:
            futures = [
                pool.submit(self._backup_path, path, snapshot_path)
                for path in self.config.paths
            ]
            wait(futures)

        return [future.result() for future in futures]

    def _backup_path(self, path: str, snapshot_path: str) -> JobResult:
        """
        Archive (optionally) and upload a single path.

        Never raises: any failure is recorded on the returned JobResult.
        """
        result = JobResult(
            path=path,
            destination=join_remote(snapshot_path, archive_basename(path))
        )

        with self._permit:
            self._log(f"Backing up: {path}")

            if self.config.dry_run:
                if self.config.compress:
                    self._log(f"Dry run: directory not archived: {path}", logging.WARNING)
                self._log(f"Dry run: upload not done: {result.destination}", logging.WARNING)
                result.status = 'skipped'
                return result

            archive_path = None
            try:
                source = path
                if self.config.compress:
                    os.makedirs(self.config.temp_dir, exist_ok=True)
                    archive_path = self.archiver(
                        path,
                        os.path.join(self.config.temp_dir, archive_basename(path)),
                        self.config.compression_format
                    )
                    result.archived = True
                    source = archive_path
                    self._log(f"Archive created: {os.path.basename(archive_path)} "
                              f"({get_archive_size(archive_path) / 1024 / 1024:.2f} MB)")

                self.storage.upload(source, result.destination)
                result.status = 'success'
                self._log(f"Backup done: {path}")

            except Exception as e:
                result.status = 'failed'
                result.error = str(e)
                self._log(f"Backup failed for {path}: {e}", logging.ERROR)

            finally:
                if archive_path and os.path.exists(archive_path):
                    try:
                        os.remove(archive_path)
                    except OSError as e:
                        self._log(f"Warning: Failed to remove temporary archive {archive_path}: {e}",
                                  logging.WARNING)

        return result

    def _complete(self, snapshot_path: str, report: RunReport):
        """Write the completion marker. Failures are warnings."""
        if self.config.dry_run:
            self._log(f"Dry run: completion marker not written: {snapshot_path}", logging.WARNING)
            return

        try:
            self.storage.mark_complete(snapshot_path)
            self._log(f"Snapshot marked complete: {snapshot_path}")
        except StorageError as e:
            message = f"Failed to mark snapshot complete {snapshot_path}: {e}"
            report.warnings.append(message)
            self._log(message, logging.WARNING)

    def _finish(self, report: RunReport) -> RunReport:
        self._set_state(RunState.DONE, report)
        self._log("========= Backup done =========")
        report.logs = list(self.logs)
        return report

    def _set_state(self, state: RunState, report: RunReport):
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state
        report.state = state

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        with self._logs_lock:
            self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(config: RunConfig, storage=None) -> RunReport:
    """
    Run a backup with the storage handler matching the remote.

    Args:
        config: Settings for this run
        storage: Optional storage handler (default: create_storage(config.remote_base))

    Returns:
        RunReport with execution results
    """
    if storage is None:
        try:
            storage = create_storage(config.remote_base)
        except StorageError as e:
            logger.error(f"Failed to initialize storage for {config.remote_base}: {e}")
            return RunReport(
                remote_base=config.remote_base,
                dry_run=config.dry_run,
                status='failed',
                state=RunState.DONE,
                fatal_error=str(e)
            )

    orchestrator = BackupOrchestrator(config, storage)
    return orchestrator.run()
