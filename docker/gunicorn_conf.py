# Gunicorn settings for the dumpkeeper API
# Every worker serves HTTP; exactly one of them also runs the retention scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:8000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
# Listing a large S3 target can take a while
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '120'))
wsgi_app = 'dumpkeeper:create_app()'


def post_worker_init(worker):
    """
    Decide per worker whether it owns the retention scheduler.

    create_app() reads SCHEDULER_WORKER; only the worker with age 0 gets
    'true', so the daily cleanup and manual triggers never run twice
    against the same storage target.

    Args:
        worker: Gunicorn worker instance
    """
    owner = worker.age == 0
    os.environ['SCHEDULER_WORKER'] = 'true' if owner else 'false'

    role = 'retention scheduler owner' if owner else 'HTTP only'
    logger.info(f"dumpkeeper worker {worker.pid} (age={worker.age}): {role}")
