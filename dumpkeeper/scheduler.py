"""
Retention scheduling for dumpkeeper.

One BackgroundScheduler per deployment (see docker/gunicorn_conf.py) runs:
- the nightly retention cleanup over every storage target
- one-shot retention runs for a single target, queued from the API
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from dumpkeeper import db
from dumpkeeper.dumps.service import enforce_retention_policies, run_retention

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = 'retention_cleanup'
MANUAL_JOB_PREFIX = 'manual_'

# Module state: the scheduler and the app its jobs run against
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Number of rows in the APScheduler job table.

    Lets a process without its own scheduler (the reloader parent, an HTTP
    only gunicorn worker) tell whether another process has one.
    """
    try:
        from sqlalchemy import text
        count = db.session.execute(text("SELECT COUNT(*) FROM apscheduler_jobs")).scalar()
        return count or 0
    except Exception:
        # No job table until some scheduler has started
        db.session.rollback()
        return 0


def init_scheduler(app):
    """
    Create the scheduler and register the nightly retention job.

    Calling it again returns the existing scheduler.

    Args:
        app: Flask app the jobs run against

    Raises:
        ValueError: If RETENTION_SCHEDULE_CRON is not a valid crontab line
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    flask_app = app
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        jobstores={'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])},
        # Retention on one target is already parallel inside the engine
        executors={'default': ThreadPoolExecutor(max_workers=2)},
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': app.config.get('RETENTION_MISFIRE_GRACE_TIME', 3600)
        },
        timezone=tz
    )

    cron = app.config['RETENTION_SCHEDULE_CRON']
    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger.from_crontab(cron, timezone=tz),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
    )
    logger.info(f"Retention cleanup scheduled with cron '{cron}' ({tz})")

    return scheduler


def start_scheduler():
    """
    Start the scheduler created by init_scheduler().

    Raises:
        RuntimeError: If init_scheduler() has not been called
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info("Retention scheduler already running")
        return

    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled {job.id}, next run: {_next_run(job) or 'N/A'}")


def stop_scheduler():
    """Shut the scheduler down if it is running."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("Retention scheduler stopped")


def _enforce_retention_wrapper():
    with flask_app.app_context():
        try:
            summary = enforce_retention_policies()
        except Exception as e:
            logger.error(f"Scheduled retention failed: {e}")
            return
        logger.info(
            f"Scheduled retention finished: {summary['targets_processed']} targets, "
            f"{summary['deleted']} dumps deleted"
        )


def _run_target_wrapper(target_name: str):
    with flask_app.app_context():
        try:
            report = run_retention(target_name)
        except Exception as e:
            logger.error(f"Retention on {target_name} failed: {e}")
            return
        logger.info(f"Retention on {target_name} finished with status {report.status}")


def trigger_retention_now(target_name: str) -> str:
    """
    Queue a one-shot retention run on a single target.

    Returns:
        Id of the queued job

    Raises:
        RuntimeError: If this process does not run the scheduler
        StorageTargetNotFound: If the target is not configured
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Fail here instead of inside the background job
    flask_app.extensions['dumpkeeper'].get_target(target_name)

    now = datetime.now(timezone.utc)
    job = scheduler.add_job(
        func=_run_target_wrapper,
        args=[target_name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"{MANUAL_JOB_PREFIX}{target_name}_{int(now.timestamp())}",
        name=f"Manual retention: {target_name}",
        replace_existing=False
    )
    logger.info(f"Queued manual retention on target: {target_name}")
    return job.id


def _next_run(job):
    return job.next_run_time.isoformat() if job.next_run_time else None


def get_scheduled_jobs() -> list:
    """
    Describe the scheduled jobs.

    Returns:
        List of {id, name, next_run, trigger}
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': _next_run(job),
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    """True if this process or another one sharing the job store runs the scheduler."""
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0
