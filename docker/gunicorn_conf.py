# Gunicorn configuration for the replicator
# Runs the scheduler in exactly one worker
#
#   gunicorn -c docker/gunicorn_conf.py wsgi:app

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WORKERS', 2))

# The application is created in each worker after fork
preload_app = False


def pre_fork(server, worker):
    """
    Called in the master just before a worker is forked.

    Designates the first worker (worker.age == 1) as the scheduler owner.
    The environment set here is inherited by the forked worker, which reads
    SCHEDULER_WORKER while building the app. Respawned workers never own
    the scheduler; replication runs are additionally serialized by the
    per-job run lock.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker about to be forked (age: 1, 2, 3, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker age={worker.age}: Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker age={worker.age}: Standard HTTP worker (scheduler disabled)")
