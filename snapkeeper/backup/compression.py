"""
Compression handlers for backup archives.

Supports multiple formats:
- zip: Standard zip compression (default)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Archives hold the regular files below a source directory with paths
relative to that directory. Symlinks and directory entries are skipped,
unreadable files are left out with a warning.
"""

import os
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Iterator, Tuple


logger = logging.getLogger(__name__)

EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def create_archive(
    source_dir: str,
    output_path: str,
    compression_format: str = 'zip'
) -> str:
    """
    Create a single archive file from a directory tree.

    Args:
        source_dir: Directory whose files go into the archive
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    source = Path(source_dir)
    if not source.is_dir():
        raise CompressionError(f"Source is not a directory: {source_dir}")

    archive_path = f"{output_path}.{EXTENSIONS[compression_format]}"
    logger.debug(f"Zipping directory {source_dir} -> {archive_path}")

    try:
        if compression_format == 'zip':
            count = _create_zip(source, archive_path)
        else:
            count = _create_tar(source, archive_path, compression_format)
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive {archive_path}")
        raise CompressionError(f"Failed to create archive of {source_dir}: {e}")

    logger.debug(f"Zipping done: {source_dir} ({count} files)")
    return archive_path


def _walk_files(source: Path) -> Iterator[Tuple[Path, str]]:
    """
    Yield (path, relative name) for every regular file below source.

    Unreadable directories are reported and skipped.
    """
    def on_error(error):
        logger.warning(f"Error reading path, skipping: {error.filename} ({error})")

    for root, dirs, files in os.walk(source, onerror=on_error):
        dirs.sort()
        for name in sorted(files):
            path = Path(root) / name
            if path.is_symlink() or not path.is_file():
                continue
            yield path, path.relative_to(source).as_posix()


def _open_readable(path: Path):
    """Open a file for reading, or return None if it cannot be read."""
    try:
        return open(path, 'rb')
    except OSError as e:
        logger.warning(f"Skipping unreadable file {path}: {e}")
        return None


def _create_zip(source: Path, archive_path: str) -> int:
    """
    Create a ZIP archive.

    Returns:
        Number of files added
    """
    count = 0

    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for path, relative_path in _walk_files(source):
            handle = _open_readable(path)
            if handle is None:
                continue

            # Streamed entries have no size up front; large files need zip64 headers
            with handle, zipf.open(relative_path, 'w', force_zip64=True) as entry:
                while True:
                    chunk = handle.read(1024 * 1024)
                    if not chunk:
                        break
                    entry.write(chunk)

            if count % 100 == 0:
                logger.debug(f"Zipping progress: {count} files in {source}, current {relative_path}")
            count += 1

    return count


def _create_tar(source: Path, archive_path: str, compression_format: str) -> int:
    """
    Create a TAR archive with optional compression.

    Returns:
        Number of files added
    """
    mode_map = {
        'tar.gz': 'w:gz',
        'tar.bz2': 'w:bz2',
        'tar.xz': 'w:xz',
        'none': 'w'
    }

    count = 0

    with tarfile.open(archive_path, mode_map[compression_format]) as tar:
        for path, relative_path in _walk_files(source):
            handle = _open_readable(path)
            if handle is None:
                continue

            with handle:
                info = tar.gettarinfo(str(path), arcname=relative_path)
                tar.addfile(info, handle)

            count += 1

    return count


def archive_basename(source_path: str) -> str:
    """
    Deterministic file-system safe name for a source path.

    '/home/user/docs' becomes 'home_user_docs'.
    """
    name = source_path.strip('/').replace('/', '_')
    return name or 'root'


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
