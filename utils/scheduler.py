"""
Scheduled Tasks Module
Background work of the content pipeline: render queue passes, retries,
stale job recovery, data polling and cleanup
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
scheduler = None

RENDER_QUEUE_JOB_ID = 'render_queue'


def render_queue_task(app):
    """
    Scheduled task to process due render jobs
    Runs every RENDER_POLL_INTERVAL_SECONDS
    """
    worker = app.extensions['render_worker']
    try:
        worker.process_due_jobs(app, limit=app.config.get('RENDER_BATCH_SIZE', 10))
    except Exception as e:
        logger.error(f"Error in render queue task: {e}")


def retry_failed_jobs_task(app):
    """
    Scheduled task to recover stale jobs and re-queue failed ones
    Runs every minute
    """
    with app.app_context():
        queue = app.extensions['render_queue']
        try:
            queue.recover_stale_jobs()
            queue.retry_failed_jobs()
        except Exception as e:
            logger.error(f"Error in render retry task: {e}")


def data_polling_task(app):
    """Scheduled task to poll remote data for polling plugins"""
    with app.app_context():
        from utils.polling import DataPoller

        try:
            poller = DataPoller(app.extensions['merge_service'], app.extensions['render_queue'])
            poller.poll_due_instances()
        except Exception as e:
            logger.error(f"Error in data polling task: {e}")


def cleanup_task(app):
    """
    Scheduled task to delete old finished jobs and orphaned bitmaps
    Runs daily at 3 AM
    """
    with app.app_context():
        queue = app.extensions['render_queue']
        storage = app.extensions['image_storage']

        try:
            deleted = queue.cleanup_old_jobs(app.config.get('RENDER_JOB_RETENTION_DAYS', 7))
            orphans = storage.find_orphaned_files()
            result = storage.delete_many(orphans)
            logger.info(f"Cleanup removed {deleted} jobs and {result['deleted']} orphaned bitmaps")
        except Exception as e:
            logger.error(f"Error in cleanup task: {e}")


def initial_renders_task(app):
    """Queue renders for instances without a refresh chain, once at startup"""
    with app.app_context():
        try:
            app.extensions['render_queue'].schedule_initial_renders()
        except Exception as e:
            logger.error(f"Error queueing initial renders: {e}")


def request_queue_pass():
    """Bring the next render queue pass forward to now"""
    if scheduler is None or not scheduler.running:
        return

    if scheduler.get_job(RENDER_QUEUE_JOB_ID) is not None:
        scheduler.modify_job(RENDER_QUEUE_JOB_ID, next_run_time=datetime.now(scheduler.timezone))


def init_scheduler(app):
    """
    Initialize and start the background scheduler

    Args:
        app: Flask application instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return

    try:
        scheduler = BackgroundScheduler()

        scheduler.add_job(
            func=render_queue_task,
            trigger=IntervalTrigger(seconds=app.config.get('RENDER_POLL_INTERVAL_SECONDS', 10)),
            args=[app],
            id=RENDER_QUEUE_JOB_ID,
            name='Render queue processing',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        scheduler.add_job(
            func=retry_failed_jobs_task,
            trigger=IntervalTrigger(minutes=1),
            args=[app],
            id='render_retry',
            name='Render retry and recovery',
            replace_existing=True
        )

        scheduler.add_job(
            func=data_polling_task,
            trigger=IntervalTrigger(seconds=app.config.get('DATA_POLL_INTERVAL_SECONDS', 60)),
            args=[app],
            id='data_polling',
            name='Plugin data polling',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        scheduler.add_job(
            func=cleanup_task,
            trigger=CronTrigger(hour=3, minute=0),
            args=[app],
            id='render_cleanup',
            name='Render job cleanup',
            replace_existing=True
        )

        scheduler.add_job(
            func=initial_renders_task,
            args=[app],
            id='initial_renders',
            name='Initial renders',
            replace_existing=True
        )

        scheduler.start()
        logger.info("Scheduler started successfully")

    except Exception as e:
        logger.error(f"Failed to initialize scheduler: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    global scheduler

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        scheduler = None
