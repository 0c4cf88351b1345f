"""
APScheduler configuration for running backups on a schedule.

Manages:
- A single cron-triggered backup job for one RunConfig
- Scheduler start/stop

The retention policy decides on every trigger whether a backup is actually
due, so the cron expression can fire more often than max_days.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from snapkeeper.config import RunConfig, get_config
from snapkeeper.backup.executor import execute_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'snapkeeper_backup'

# Global scheduler instance
scheduler = None


def init_scheduler(run_config: RunConfig, cron: str, blocking: bool = True):
    """
    Initialize and configure APScheduler.

    Args:
        run_config: Settings passed to every scheduled run
        cron: Crontab expression, e.g. '0 3 * * *'
        blocking: Use BlockingScheduler (daemon) instead of BackgroundScheduler

    Returns:
        The scheduler instance

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    timezone = get_config().SCHEDULER_TIMEZONE
    trigger = CronTrigger.from_crontab(cron, timezone=timezone)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run against the remote at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler_class = BlockingScheduler if blocking else BackgroundScheduler
    scheduler = scheduler_class(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[run_config],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Backup to {run_config.remote_base}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup to {run_config.remote_base} ({cron} {timezone})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    With a BlockingScheduler this call only returns once the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    for job in get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} (trigger: {job['trigger']})")

    logger.info("APScheduler starting")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper(run_config: RunConfig):
    """
    Wrapper for executing a backup in scheduler context.

    Logs the outcome instead of raising so a failing run never stops the scheduler.
    """
    try:
        logger.info(f"Scheduler executing backup to {run_config.remote_base}")
        report = execute_backup(run_config)
        logger.info(f"Scheduled backup finished with status: {report.status} (exit code {report.exit_code})")
        return report
    except Exception as e:
        logger.exception(f"Scheduled backup to {run_config.remote_base} failed: {e}")
        return None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
