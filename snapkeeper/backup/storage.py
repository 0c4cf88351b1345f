"""
Storage handlers for backup snapshots.

Supports:
- RcloneStorage: Any rclone remote, driven through the rclone CLI
- S3Storage: AWS S3 buckets addressed as s3://bucket/prefix

Both handlers expose the same operations:
check_connection, list_snapshots, delete, upload and mark_complete.
"""

import os
import shutil
import logging
import subprocess
from pathlib import Path
from typing import Optional, List, Tuple
import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)

COMPLETION_MARKER = 'BACKUP_COMPLETED'


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class RemoteUnavailableError(StorageError):
    """Raised when the remote cannot be reached or listed."""
    pass


class RemoteDeleteError(StorageError):
    """Raised when a snapshot cannot be deleted."""
    pass


class RemoteUploadError(StorageError):
    """Raised when a local path cannot be uploaded."""
    pass


class RemoteMarkError(StorageError):
    """Raised when the completion marker cannot be written."""
    pass


def join_remote(base: str, *parts: str) -> str:
    """Join remote path segments with a single slash."""
    path = base.rstrip('/')
    for part in parts:
        part = part.strip('/')
        if part:
            path = f"{path}/{part}"
    return path


class RcloneStorage:
    """
    Handler for rclone remotes.

    Every operation is a single rclone invocation. Snapshots are the
    top-level directories below the remote base:
    {remote_base}/bak_{YYYY-MM-DD_HH-MM-SS}/...
    """

    def __init__(self, binary: str = 'rclone', timeout: Optional[float] = None):
        """
        Initialize rclone storage handler.

        Args:
            binary: rclone executable name or path
            timeout: Optional timeout in seconds for each rclone call
        """
        self.binary = binary
        self.timeout = timeout

    def check_connection(self, remote_base: str):
        """
        Verify rclone is installed and the remote base is accessible.

        Raises:
            RemoteUnavailableError: If rclone is missing or the remote fails
        """
        if shutil.which(self.binary) is None:
            raise RemoteUnavailableError(f"rclone not found in PATH: {self.binary}")
        logger.debug("rclone installed")

        try:
            self._run('lsd', remote_base)
        except StorageError as e:
            raise RemoteUnavailableError(f"Failed to access remote {remote_base!r}: {e}")
        logger.debug(f"Remote access ok: {remote_base}")

    def list_snapshots(self, remote_base: str) -> List[str]:
        """
        List snapshot directory names at the remote base.

        Returns:
            Raw directory names (trailing slash already stripped)

        Raises:
            RemoteUnavailableError: If listing fails
        """
        try:
            output = self._run('lsf', remote_base, '--dirs-only')
        except StorageError as e:
            raise RemoteUnavailableError(f"rclone lsf {remote_base} failed: {e}")

        names = [line.strip().rstrip('/') for line in output.splitlines()]
        names = [name for name in names if name]

        if not names:
            logger.warning("No old backups found")
        else:
            logger.debug(f"Backups found on remote: {len(names)}")

        return names

    def delete(self, remote_base: str, name: str):
        """
        Purge a snapshot directory and everything below it.

        Raises:
            RemoteDeleteError: If purge fails
        """
        full_path = join_remote(remote_base, name)
        logger.info(f"Purging remote dir: {full_path}")
        try:
            self._run('purge', full_path)
        except StorageError as e:
            raise RemoteDeleteError(f"Failed to purge {full_path}: {e}")

    def upload(self, local_path: str, remote_path: str):
        """
        Copy a local file or directory to a remote directory.

        Raises:
            RemoteUploadError: If the local path is missing or rclone fails
        """
        if not os.path.exists(local_path):
            raise RemoteUploadError(f"Local path not found: {local_path}")

        try:
            self._run(
                'copy', local_path, remote_path,
                '--transfers=1', '--checkers=4', '--fast-list'
            )
        except StorageError as e:
            raise RemoteUploadError(f"Failed to copy to remote {remote_path}: {e}")

    def mark_complete(self, remote_path: str):
        """
        Write the zero-byte completion marker into a snapshot directory.

        Raises:
            RemoteMarkError: If rclone touch fails
        """
        marker = join_remote(remote_path, COMPLETION_MARKER)
        try:
            self._run('touch', marker)
        except StorageError as e:
            raise RemoteMarkError(f"Failed to create {COMPLETION_MARKER} file: {e}")

    def _run(self, *args: str) -> str:
        """
        Run an rclone command and return its stdout.

        Raises:
            StorageError: If the command cannot be started, times out or exits non-zero
        """
        cmd = [self.binary, *args]
        logger.debug(f"Execute: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise StorageError(f"{' '.join(cmd)} timed out after {self.timeout}s")
        except OSError as e:
            raise StorageError(f"Failed to execute {self.binary}: {e}")

        if result.returncode != 0:
            raise StorageError(
                f"exit status {result.returncode}\nstderr: {result.stderr.strip()}"
            )

        return result.stdout


class S3Storage:
    """
    Handler for snapshots kept in AWS S3.

    Remote paths use the form s3://{bucket}/{prefix}. Snapshots are the
    common prefixes directly below the remote base prefix.
    """

    def __init__(self, region: str = 'us-east-1', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key (default: boto3 credential chain)
        """
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def parse_url(remote_path: str) -> Tuple[str, str]:
        """
        Split an s3:// URL into bucket and key prefix.

        Returns:
            (bucket, prefix) where prefix has no leading or trailing slash

        Raises:
            StorageError: If the URL is not an s3:// URL with a bucket
        """
        if not remote_path.startswith('s3://'):
            raise StorageError(f"Not an S3 URL: {remote_path}")

        bucket, _, prefix = remote_path[len('s3://'):].partition('/')
        if not bucket:
            raise StorageError(f"Missing bucket in S3 URL: {remote_path}")

        return bucket, prefix.strip('/')

    def check_connection(self, remote_base: str):
        """
        Test S3 connection and bucket access.

        Raises:
            RemoteUnavailableError: If the bucket is missing or not accessible
        """
        bucket, _ = self._parse(remote_base, RemoteUnavailableError)

        try:
            self.s3_client.head_bucket(Bucket=bucket)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise RemoteUnavailableError(f"Bucket does not exist: {bucket}")
            elif error_code == '403':
                raise RemoteUnavailableError(f"Access denied to bucket: {bucket}")
            else:
                raise RemoteUnavailableError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteUnavailableError(f"Failed to connect to S3: {e}")

    def list_snapshots(self, remote_base: str) -> List[str]:
        """
        List snapshot names (common prefixes) below the remote base.

        Raises:
            RemoteUnavailableError: If listing fails
        """
        bucket, prefix = self._parse(remote_base, RemoteUnavailableError)
        list_prefix = f"{prefix}/" if prefix else ''

        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket, Prefix=list_prefix, Delimiter='/'):
                for common in page.get('CommonPrefixes', []):
                    name = common['Prefix'][len(list_prefix):].rstrip('/')
                    if name:
                        names.append(name)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteUnavailableError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteUnavailableError(f"Failed to list S3 objects: {e}")

        if not names:
            logger.warning("No old backups found")
        else:
            logger.debug(f"Backups found on remote: {len(names)}")

        return names

    def delete(self, remote_base: str, name: str):
        """
        Delete every object below a snapshot prefix.

        Raises:
            RemoteDeleteError: If listing or deletion fails
        """
        bucket, prefix = self._parse(join_remote(remote_base, name), RemoteDeleteError)
        logger.info(f"Purging remote dir: s3://{bucket}/{prefix}")

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket, Prefix=f"{prefix}/"):
                keys = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
                if keys:
                    self.s3_client.delete_objects(
                        Bucket=bucket,
                        Delete={'Objects': keys, 'Quiet': True}
                    )

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteDeleteError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteDeleteError(f"Failed to delete from S3: {e}")

    def upload(self, local_path: str, remote_path: str):
        """
        Upload a file, or a directory tree, below a remote prefix.

        A file lands at {remote_path}/{basename}. A directory's contents land
        directly below {remote_path}, like rclone copy. Symlinks are skipped.

        Raises:
            RemoteUploadError: If the local path is missing or the upload fails
        """
        source = Path(local_path)
        if not source.exists():
            raise RemoteUploadError(f"Local path not found: {local_path}")

        bucket, prefix = self._parse(remote_path, RemoteUploadError)

        if source.is_file():
            uploads = [(source, f"{prefix}/{source.name}")]
        else:
            uploads = [
                (item, f"{prefix}/{item.relative_to(source).as_posix()}")
                for item in sorted(source.rglob('*'))
                if item.is_file() and not item.is_symlink()
            ]

        try:
            for item, key in uploads:
                self.s3_client.upload_file(str(item), bucket, key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteUploadError(f"S3 upload failed ({error_code}): {e}")
        except (S3UploadFailedError, BotoCoreError, OSError) as e:
            raise RemoteUploadError(f"Failed to upload to S3: {e}")

    def mark_complete(self, remote_path: str):
        """
        Write the zero-byte completion marker object.

        Raises:
            RemoteMarkError: If the put fails
        """
        bucket, prefix = self._parse(join_remote(remote_path, COMPLETION_MARKER), RemoteMarkError)

        try:
            self.s3_client.put_object(Bucket=bucket, Key=prefix, Body=b'')
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteMarkError(f"S3 marker write failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteMarkError(f"Failed to write marker to S3: {e}")

    def _parse(self, remote_path: str, error_class):
        try:
            return self.parse_url(remote_path)
        except StorageError as e:
            raise error_class(str(e))


def create_storage(remote_base: str, config=None):
    """
    Factory function to create the storage handler for a remote.

    Args:
        remote_base: Remote base path ('s3://...' or any rclone remote)
        config: Config class providing RCLONE_BINARY, RCLONE_TIMEOUT, AWS_REGION

    Returns:
        S3Storage or RcloneStorage instance
    """
    if config is None:
        from snapkeeper.config import get_config
        config = get_config()

    if remote_base.startswith('s3://'):
        return S3Storage(region=config.AWS_REGION)

    return RcloneStorage(binary=config.RCLONE_BINARY, timeout=config.RCLONE_TIMEOUT)
