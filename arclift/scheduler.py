"""
APScheduler configuration for Arclift.

Runs the backup followed by retention purge on the configured cron schedule.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# Global scheduler instance
scheduler = None


def run_scheduled_backup(manager):
    """
    Run one backup followed by a purge.

    Errors are logged so that a failing run doesn't stop future runs.

    Args:
        manager: BackupManager instance
    """
    try:
        summary = manager.backup()
        if summary.all_failed:
            logger.error(f"Backup failed for all {len(summary.failed)} directories")
    except Exception as e:
        logger.error(f"Error backing up: {e}")

    try:
        manager.purge_old_backups()
    except Exception as e:
        logger.error(f"Error purging old backups: {e}")


def init_scheduler(manager, cron: str, timezone: str = 'UTC'):
    """
    Initialize and configure APScheduler.

    Args:
        manager: BackupManager to run
        cron: Five-field crontab expression
        timezone: Timezone the cron expression is evaluated in

    Returns:
        Configured (not yet started) scheduler

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        args=[manager],
        trigger=CronTrigger.from_crontab(cron, timezone=timezone),
        id=BACKUP_JOB_ID,
        name='Scheduled Backup',
        replace_existing=True
    )
    logger.info(f"Scheduled backup job (cron: {cron})")

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until the scheduler is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    logger.info("Starting scheduler")
    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
