# Gunicorn configuration for Dumpwarden
# Handles scheduler initialization across multiple workers

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '127.0.0.1:8030')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))

# Manual backups run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3900))


def post_fork(server, worker):
    """
    Called in the worker process before the app is loaded.

    Designates the first worker (worker.age == 1 after the first fork) as the
    scheduler owner. Only this worker starts the backup scheduler, so each
    trigger fires once.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (age increments with each fork: 1, 2, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
