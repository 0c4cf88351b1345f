"""
Unit tests for scheduler (snapkeeper/scheduler.py).

Tests APScheduler configuration and the scheduled backup wrapper.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger

from snapkeeper import scheduler as scheduler_module


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    @patch('snapkeeper.scheduler.BlockingScheduler')
    def test_init_scheduler(self, mock_scheduler_class, make_config):
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler
        run_config = make_config()

        result = scheduler_module.init_scheduler(run_config, '0 3 * * *')

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler

        call_kwargs = mock_scheduler_class.call_args[1]
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['timezone'] == 'UTC'

        job_kwargs = mock_scheduler.add_job.call_args[1]
        assert job_kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert job_kwargs['args'] == [run_config]
        assert isinstance(job_kwargs['trigger'], CronTrigger)

    @patch('snapkeeper.scheduler.BackgroundScheduler')
    def test_init_background_scheduler(self, mock_scheduler_class, make_config):
        scheduler_module.init_scheduler(make_config(), '*/30 * * * *', blocking=False)

        mock_scheduler_class.assert_called_once()

    @patch('snapkeeper.scheduler.BlockingScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, make_config):
        result1 = scheduler_module.init_scheduler(make_config(), '0 3 * * *')
        result2 = scheduler_module.init_scheduler(make_config(), '0 4 * * *')

        assert result1 == result2
        mock_scheduler_class.assert_called_once()

    @patch('snapkeeper.scheduler.BlockingScheduler')
    def test_init_scheduler_invalid_cron(self, mock_scheduler_class, make_config):
        with pytest.raises(ValueError):
            scheduler_module.init_scheduler(make_config(), 'not a cron')

        mock_scheduler_class.assert_not_called()
        assert scheduler_module.scheduler is None


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def test_start_scheduler(self):
        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()

    def test_stop_scheduler_not_running(self):
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()

    def test_get_scheduled_jobs(self):
        job = MagicMock()
        job.id = scheduler_module.BACKUP_JOB_ID
        job.name = 'Backup to nas:backups'
        job.next_run_time = None
        job.trigger = 'cron[hour=3]'
        self.mock_scheduler.get_jobs.return_value = [job]

        jobs = scheduler_module.get_scheduled_jobs()

        assert jobs == [{
            'id': scheduler_module.BACKUP_JOB_ID,
            'name': 'Backup to nas:backups',
            'next_run': None,
            'trigger': 'cron[hour=3]'
        }]

    def test_get_scheduled_jobs_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []


class TestBackupWrapper:
    """Test the scheduled backup wrapper."""

    @patch('snapkeeper.scheduler.execute_backup')
    def test_wrapper_runs_backup(self, mock_execute, make_config):
        report = MagicMock(status='completed', exit_code=0)
        mock_execute.return_value = report
        run_config = make_config()

        result = scheduler_module._execute_backup_wrapper(run_config)

        mock_execute.assert_called_once_with(run_config)
        assert result == report

    @patch('snapkeeper.scheduler.execute_backup', side_effect=RuntimeError("boom"))
    def test_wrapper_does_not_raise(self, mock_execute, make_config):
        assert scheduler_module._execute_backup_wrapper(make_config()) is None
