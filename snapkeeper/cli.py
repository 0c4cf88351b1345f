"""Command line interface for snapkeeper."""

import sys
import logging
from datetime import datetime

import click

from snapkeeper import __version__, configure_logging
from snapkeeper.config import Config, RunConfig
from snapkeeper.backup.catalog import SnapshotCatalog, CatalogError
from snapkeeper.backup.compression import EXTENSIONS
from snapkeeper.backup.executor import execute_backup
from snapkeeper.backup.storage import StorageError, create_storage


logger = logging.getLogger(__name__)


def run_options(func):
    """Options shared by `run` and `schedule`."""
    options = [
        click.option('--path', 'paths', multiple=True, required=True,
                     help='Path to back up (repeatable)'),
        click.option('--remote', required=True, help='Remote rclone target path or s3://bucket/prefix'),
        click.option('--max-backups', type=click.IntRange(min=1), default=Config.DEFAULT_MAX_BACKUPS,
                     show_default=True, help='Maximum number of backups to keep'),
        click.option('--max-days', type=click.IntRange(min=0), default=Config.DEFAULT_MAX_DAYS,
                     show_default=True, help='Minimum age in days before making a new backup'),
        click.option('--concurrency', type=click.IntRange(min=1), default=Config.DEFAULT_CONCURRENCY,
                     show_default=True, help='Max. number of paths backed up in parallel'),
        click.option('--dry-run', is_flag=True, help='Only show what would be done'),
        click.option('--zip', '-z', 'compress', is_flag=True,
                     help='Compress directories before copying to remote'),
        click.option('--format', 'compression_format', type=click.Choice(list(EXTENSIONS.keys())),
                     default=Config.DEFAULT_COMPRESSION_FORMAT, show_default=True,
                     help='Archive format used with --zip'),
        click.option('--skip-malformed', is_flag=True,
                     help='Ignore remote directories that are not snapshots instead of failing'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_run_config(paths, remote, max_backups, max_days, concurrency, dry_run,
                     compress, compression_format, skip_malformed) -> RunConfig:
    try:
        return RunConfig(
            paths=paths,
            remote_base=remote,
            max_backups=max_backups,
            max_days=max_days,
            concurrency=concurrency,
            dry_run=dry_run,
            compress=compress,
            compression_format=compression_format,
            skip_malformed=skip_malformed
        )
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option('--debug', '-d', is_flag=True, help='Enable debug output')
def main(debug):
    """Rotating snapshot backups of local paths to an rclone or S3 remote."""
    configure_logging(debug=debug)
    logger.debug("Debug mode")


@main.command()
@run_options
def run(**options):
    """Back up the given paths if the latest snapshot is old enough."""
    run_config = build_run_config(**options)
    report = execute_backup(run_config)

    if report.status == 'skipped':
        click.echo("Last backup is recent, nothing to do.")
    elif report.status == 'completed':
        ok = len(report.jobs) - len(report.failed_jobs)
        click.echo(f"Snapshot {report.snapshot_name}: {ok}/{len(report.jobs)} paths backed up")
        for job in report.failed_jobs:
            click.echo(f"  failed: {job.path}: {job.error}", err=True)
    else:
        click.echo(f"Backup aborted: {report.fatal_error}", err=True)

    sys.exit(report.exit_code)


@main.command(name='list')
@click.option('--remote', required=True, help='Remote rclone target path or s3://bucket/prefix')
@click.option('--skip-malformed', is_flag=True,
              help='Ignore remote directories that are not snapshots instead of failing')
def list_snapshots(remote, skip_malformed):
    """List snapshots at the remote, oldest first."""
    try:
        storage = create_storage(remote)
        storage.check_connection(remote)
        catalog = SnapshotCatalog.load(storage, remote, skip_malformed=skip_malformed)
    except (StorageError, CatalogError) as e:
        click.echo(f"Failed to list remote backups: {e}", err=True)
        sys.exit(1)

    if catalog.is_empty():
        click.echo("No backups found.")
        return

    now = datetime.now()
    for snapshot in catalog:
        days = (now - snapshot.created_at).total_seconds() / 86400
        click.echo(f"{snapshot.name}  {days:6.1f} days")
    click.echo(f"{catalog.count()} backups")


@main.command()
@run_options
@click.option('--cron', default=Config.SCHEDULE_CRON, show_default=True,
              help='Crontab expression for backup checks')
def schedule(cron, **options):
    """Run backups on a cron schedule until interrupted."""
    from snapkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler

    run_config = build_run_config(**options)
    try:
        init_scheduler(run_config, cron, blocking=True)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--cron')

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()


if __name__ == '__main__':
    main()
