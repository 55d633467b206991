"""
APScheduler configuration and job scheduling for the replicator.

Manages:
- Scheduled replication jobs (based on cron expressions)
- Manual job triggers
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.jobstores.base import JobLookupError
from apscheduler.executors.pool import ThreadPoolExecutor

from replicator import db
from replicator.models import ReplicationJob
from replicator.replication.executor import execute_replication_job


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


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

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # Runs are serialized; the run lock still guards against other processes
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

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_replication_jobs():
    """
    Synchronize replication jobs from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting replication jobs

    Does nothing when the scheduler is not running in this process.
    """
    if scheduler is None:
        logger.debug("Scheduler not initialized, skipping job sync")
        return

    # Clean up one-time jobs left over from earlier "Run Now" triggers
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            try:
                scheduler.remove_job(job.id)
                logger.info(f"Cleaned up old manual job: {job.id}")
            except JobLookupError:
                pass

    replication_jobs = ReplicationJob.query.all()

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('replication_')}

    for replication_job in replication_jobs:
        job_id = f"replication_{replication_job.id}"

        if replication_job.enabled and replication_job.schedule_cron:
            if job_id in scheduled_job_ids:
                _update_scheduled_job(replication_job)
                scheduled_job_ids.remove(job_id)
            else:
                _add_scheduled_job(replication_job)
        elif job_id in scheduled_job_ids:
            # Disabled or unscheduled
            _remove_scheduled_job(replication_job.id)
            scheduled_job_ids.remove(job_id)

    # Remove any leftover scheduled jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            pass


def _add_scheduled_job(replication_job: ReplicationJob):
    """
    Add a replication job to the scheduler.

    Args:
        replication_job: ReplicationJob instance
    """
    job_id = f"replication_{replication_job.id}"

    try:
        trigger = CronTrigger.from_crontab(replication_job.schedule_cron, timezone='UTC')

        scheduler.add_job(
            func=_execute_replication_wrapper,
            args=[replication_job.id],
            trigger=trigger,
            id=job_id,
            name=f"Replication: {replication_job.name}",
            replace_existing=True
        )

        logger.info(f"Scheduled replication job: {replication_job.name} ({replication_job.schedule_cron})")

    except ValueError as e:
        logger.error(f"Failed to schedule replication job {replication_job.name}: {e}")


def _update_scheduled_job(replication_job: ReplicationJob):
    """
    Update a scheduled replication job.

    Args:
        replication_job: ReplicationJob instance
    """
    job_id = f"replication_{replication_job.id}"

    try:
        job = scheduler.get_job(job_id)

        if job:
            new_trigger = CronTrigger.from_crontab(replication_job.schedule_cron, timezone='UTC')
            job.reschedule(trigger=new_trigger)
            job.modify(name=f"Replication: {replication_job.name}")

            logger.info(f"Updated scheduled replication job: {replication_job.name}")

    except ValueError as e:
        logger.error(f"Failed to update replication job {replication_job.name}: {e}")


def _remove_scheduled_job(replication_job_id: int):
    """
    Remove a replication job from the scheduler.

    Args:
        replication_job_id: ReplicationJob ID
    """
    job_id = f"replication_{replication_job_id}"

    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled replication job ID: {replication_job_id}")
    except JobLookupError:
        logger.warning(f"Replication job {replication_job_id} was not scheduled")


def _execute_replication_wrapper(job_id: int, allow_disabled: bool = False):
    """
    Wrapper function for executing replication jobs in scheduler context.

    This function ensures the database session is properly managed when
    jobs are executed by APScheduler.

    Args:
        job_id: ReplicationJob ID to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing replication job ID: {job_id} (allow_disabled={allow_disabled})")
            run = execute_replication_job(job_id, allow_disabled=allow_disabled)
            logger.info(f"Replication job {job_id} completed with status: {run.status}")
        except ValueError as e:
            logger.error(f"Scheduler replication job {job_id} failed: {e}")
        finally:
            db.session.remove()


def trigger_replication_now(job_id: int):
    """
    Manually trigger a replication job immediately.

    Args:
        job_id: ReplicationJob ID to execute

    Raises:
        RuntimeError: If the scheduler is not running in this process
        ValueError: If job not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    replication_job = db.session.get(ReplicationJob, job_id)
    if not replication_job:
        raise ValueError(f"Replication job not found: {job_id}")

    # One-time job with a short delay so the request commits first
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_replication_wrapper,
        args=[job_id, True],  # True = allow_disabled for manual triggers
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_id}_{int(now.timestamp())}",
        name=f"Manual: {replication_job.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered replication job: {replication_job.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
