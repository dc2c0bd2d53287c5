"""
APScheduler configuration for automatic backups.

One interval job checks every AUTO_BACKUP_CHECK_MINUTES whether a backup is
due according to the user's auto-backup frequency and runs it if so.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from agendavault.backup.errors import BackupError
from agendavault.backup.orchestrator import LAST_BACKUP_TIME, PREF_AUTO_BACKUP_FREQUENCY
from agendavault.backup.service import get_backup_service


logger = logging.getLogger(__name__)

FREQUENCIES = {
    'daily': timedelta(days=1),
    'weekly': timedelta(days=7),
    'monthly': timedelta(days=30),
    'off': None
}
DEFAULT_FREQUENCY = 'daily'

AUTO_BACKUP_JOB_ID = 'auto_backup_check'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Ignoring invalid last backup time: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_backup_due(settings_store, data_store, now: Optional[datetime] = None) -> bool:
    """
    Decide whether an automatic backup should run now.

    A backup is due when the frequency is not 'off', there is data to back up
    and the last backup is older than the frequency interval (or never ran).

    Args:
        settings_store: SettingsStore with the frequency and last backup time
        data_store: LocalDataStore to check for data
        now: Current time (default: utcnow)
    """
    frequency = settings_store.get(PREF_AUTO_BACKUP_FREQUENCY, DEFAULT_FREQUENCY)
    interval = FREQUENCIES.get(frequency)
    if interval is None:
        return False

    if not data_store.has_data():
        logger.debug("Auto-backup skipped: no data")
        return False

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    last_backup = _parse_timestamp(settings_store.get(LAST_BACKUP_TIME))
    return last_backup is None or now - last_backup >= interval


def run_auto_backup_check():
    """
    Scheduler entry point: run a backup if one is due.

    Failures are logged, never raised into the scheduler.
    """
    global flask_app

    with flask_app.app_context():
        orchestrator = get_backup_service(flask_app)

        if not is_backup_due(orchestrator.settings_store, orchestrator.data_store):
            return

        logger.info("Automatic backup due, starting")
        try:
            result = orchestrator.create_backup()
            logger.info(f"Automatic backup completed: {result['file_name']}")
        except BackupError as e:
            logger.error(f"Automatic backup failed ({e.kind}): {e}")


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=run_auto_backup_check,
        trigger=IntervalTrigger(minutes=app.config.get('AUTO_BACKUP_CHECK_MINUTES', 60)),
        id=AUTO_BACKUP_JOB_ID,
        name='Automatic Backup Check',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]
