"""
Backup module for snapkeeper.

This module handles the core backup functionality including:
- Snapshot catalog (remote snapshot names and their timestamps)
- Retention policy (backup due, eviction target)
- Compression
- Storage (rclone and S3)
- Orchestration of a backup run
"""

from .executor import BackupOrchestrator, RunReport, RunState, JobResult, execute_backup
from .catalog import Snapshot, SnapshotCatalog
from .compression import create_archive
from .storage import RcloneStorage, S3Storage, create_storage
from .retention import RetentionPolicy

__all__ = [
    'BackupOrchestrator',
    'RunReport',
    'RunState',
    'JobResult',
    'execute_backup',
    'Snapshot',
    'SnapshotCatalog',
    'create_archive',
    'RcloneStorage',
    'S3Storage',
    'create_storage',
    'RetentionPolicy'
]
