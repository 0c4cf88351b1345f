import os
import tempfile
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    return float(value) if value else None


class Config:
    """Base configuration"""

    DEBUG = False

    # Logging
    LOG_DIR = os.environ.get('SNAPKEEPER_LOG_DIR') or os.path.join(
        os.path.expanduser('~'), '.snapkeeper', 'logs'
    )

    # Temporary archives
    TEMP_DIR = os.environ.get('SNAPKEEPER_TEMP_DIR') or tempfile.gettempdir()

    # Remote
    RCLONE_BINARY = os.environ.get('RCLONE_BINARY') or 'rclone'
    RCLONE_TIMEOUT = _env_float('RCLONE_TIMEOUT')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'

    # Retention defaults
    DEFAULT_MAX_BACKUPS = 14
    DEFAULT_MAX_DAYS = 7
    DEFAULT_CONCURRENCY = 2  # max number of parallel path backups
    DEFAULT_COMPRESSION_FORMAT = 'zip'

    # Scheduler
    SCHEDULE_CRON = os.environ.get('SNAPKEEPER_SCHEDULE_CRON') or '0 3 * * *'
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """Return the configuration class selected by name or SNAPKEEPER_ENV."""
    if config_name is None:
        config_name = os.environ.get('SNAPKEEPER_ENV', 'default')
    return config[config_name]


@dataclass(frozen=True)
class RunConfig:
    """
    Settings for one backup run.

    Built once at startup and handed to the orchestrator; never modified
    while a run is in progress.
    """

    paths: Tuple[str, ...]
    remote_base: str
    max_backups: int = Config.DEFAULT_MAX_BACKUPS
    max_days: int = Config.DEFAULT_MAX_DAYS
    concurrency: int = Config.DEFAULT_CONCURRENCY
    dry_run: bool = False
    compress: bool = False
    compression_format: str = Config.DEFAULT_COMPRESSION_FORMAT
    temp_dir: str = field(default_factory=lambda: get_config().TEMP_DIR)
    skip_malformed: bool = False

    def __post_init__(self):
        from snapkeeper.backup.compression import EXTENSIONS, archive_basename

        # Accept any iterable of paths but store absolute paths in an immutable tuple
        object.__setattr__(self, 'paths', tuple(os.path.abspath(path) for path in self.paths))

        if not self.paths:
            raise ValueError("At least one path to back up is required")

        # Each path owns its destination and temp archive, both named after archive_basename()
        seen = {}
        for path in self.paths:
            name = archive_basename(path)
            if name in seen:
                raise ValueError(
                    f"Paths {seen[name]} and {path} would both be stored as '{name}'"
                )
            seen[name] = path

        if not self.remote_base:
            raise ValueError("Remote base path is required")
        if self.max_backups < 1:
            raise ValueError(f"max_backups must be at least 1, got {self.max_backups}")
        if self.max_days < 0:
            raise ValueError(f"max_days must not be negative, got {self.max_days}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")

        if self.compression_format not in EXTENSIONS:
            raise ValueError(
                f"Invalid compression format: {self.compression_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )
