"""
Shared pytest fixtures for snapkeeper tests.

This module provides fixtures for:
- A recording in-memory storage handler (RecordingStorage)
- Run configuration factory
- Mock fixtures for external services (S3)
- Temporary file fixtures
"""

import os
import threading
import time
from datetime import datetime

import pytest
import boto3
from moto import mock_aws

from snapkeeper import scheduler as scheduler_module
from snapkeeper.config import RunConfig
from snapkeeper.backup.storage import (
    COMPLETION_MARKER,
    RemoteUnavailableError,
    RemoteDeleteError,
    RemoteUploadError,
    RemoteMarkError,
)


class RecordingStorage:
    """
    In-memory storage handler that records every call.

    Snapshots live in self.snapshots as {name: set of entries}. Uploads
    register the snapshot directory like rclone copy would, and the
    in-flight upload count is tracked to measure concurrency.
    """

    def __init__(self, snapshots=(), upload_delay=0.0):
        self.snapshots = {name: set() for name in snapshots}
        self.upload_delay = upload_delay
        self.calls = []
        self.uploaded = []
        self.fail_list = False
        self.fail_delete = False
        self.fail_mark = False
        self.fail_upload_paths = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def call_names(self):
        return [call[0] for call in self.calls]

    def check_connection(self, remote_base):
        self._record('check_connection', remote_base)
        if self.fail_list:
            raise RemoteUnavailableError("remote unreachable")

    def list_snapshots(self, remote_base):
        self._record('list_snapshots', remote_base)
        if self.fail_list:
            raise RemoteUnavailableError("remote unreachable")
        return [f"{name}/" for name in self.snapshots]

    def delete(self, remote_base, name):
        self._record('delete', remote_base, name)
        if self.fail_delete:
            raise RemoteDeleteError(f"cannot purge {name}")
        self.snapshots.pop(name, None)

    def upload(self, local_path, remote_path):
        self._record('upload', local_path, remote_path)

        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

        try:
            if self.upload_delay:
                time.sleep(self.upload_delay)
            if not os.path.exists(local_path):
                raise RemoteUploadError(f"Local path not found: {local_path}")
            if any(local_path.startswith(p) for p in self.fail_upload_paths):
                raise RemoteUploadError(f"copy failed: {local_path}")

            snapshot, entry = self._split(remote_path)
            with self._lock:
                self.snapshots.setdefault(snapshot, set()).add(entry)
                self.uploaded.append((local_path, remote_path))
        finally:
            with self._lock:
                self.in_flight -= 1

    def mark_complete(self, remote_path):
        self._record('mark_complete', remote_path)
        if self.fail_mark:
            raise RemoteMarkError("touch failed")
        snapshot = remote_path.rstrip('/').rsplit('/', 1)[-1]
        self.snapshots.setdefault(snapshot, set()).add(COMPLETION_MARKER)

    @staticmethod
    def _split(remote_path):
        parts = remote_path.rstrip('/').split('/')
        return parts[-2], parts[-1]


@pytest.fixture
def storage():
    """Empty recording storage."""
    return RecordingStorage()


@pytest.fixture
def make_storage():
    """Factory for RecordingStorage with existing snapshots."""
    return RecordingStorage


@pytest.fixture
def source_dirs(tmp_path):
    """
    Create two source directories with a few files.

    Creates:
    - src/alpha/a.txt, src/alpha/nested/b.txt
    - src/beta/c.txt
    """
    alpha = tmp_path / 'src' / 'alpha'
    (alpha / 'nested').mkdir(parents=True)
    (alpha / 'a.txt').write_text('alpha content')
    (alpha / 'nested' / 'b.txt').write_text('nested content')

    beta = tmp_path / 'src' / 'beta'
    beta.mkdir(parents=True)
    (beta / 'c.txt').write_text('beta content')

    return [str(alpha), str(beta)]


@pytest.fixture
def make_config(tmp_path, source_dirs):
    """Factory for RunConfig with test defaults."""
    def _make(**overrides):
        values = {
            'paths': source_dirs,
            'remote_base': 'nas:backups',
            'temp_dir': str(tmp_path / 'temp'),
        }
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def fixed_clock():
    """Clock frozen at 2024-01-10 00:00:00."""
    return lambda: datetime(2024, 1, 10, 0, 0, 0)


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - link.txt (symlink to test_file1.txt)
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (data / 'link.txt').symlink_to(data / 'test_file1.txt')

    return data


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Reset the global scheduler between tests."""
    yield
    scheduler_module.scheduler = None
