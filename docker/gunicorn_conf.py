# Gunicorn configuration for Agenda Vault
# Only one worker runs the automatic backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
# Restores and uploads run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '300'))


def post_worker_init(worker):
    """
    Designate the first worker (worker.age == 0) as the scheduler owner.

    Every other worker serves HTTP only, so an automatic backup is never
    started twice for the same interval.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only")
