"""
Replication executor - orchestrates one run of a replication job.

Workflow:
1. Create ReplicationRun record (status: running)
2. Validate job settings
3. Acquire the job's run lock
4. Check the environment (rsync present, remote reachable)
5. Replicate every configured source, one at a time
6. Enforce the retention policy on every namespace
7. Release the lock and update ReplicationRun (status: success/failed)
"""

import logging
import os
import posixpath
import shutil
import time
from datetime import datetime
from typing import Callable, List, Optional

from flask import current_app
from werkzeug.utils import secure_filename

from replicator import db
from replicator.models import ReplicationJob, ReplicationRun, SourceResult
from .engine import ReplicationEngine, Outcome
from .lock import RunLock, AlreadyRunning
from .naming import resolve_namespace
from .retention import RetentionManager
from .settings import JobSettings, ConfigurationError
from .transfer import RsyncTransfer
from .transport import create_transports, TransportError


logger = logging.getLogger(__name__)

# Records from this logger tree are copied into ReplicationRun.logs
RUN_LOGGER_NAME = 'replicator.replication'


class ReplicationError(Exception):
    """Raised when a run must abort before or between replication steps."""
    pass


class RunLogCollector(logging.Handler):
    """Collects log lines emitted during a run for the history record."""

    def __init__(self):
        super().__init__(level=logging.INFO)
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(message)s', datefmt='%Y-%m-%d %H:%M:%S'
        ))

    def emit(self, record):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)


def lock_path_for(job_name: str, lock_dir: str) -> str:
    return os.path.join(lock_dir, f"{secure_filename(job_name) or 'job'}.lock")


class ReplicationExecutor:
    """
    Orchestrates the complete replication workflow for a job.
    """

    def __init__(self, job: ReplicationJob, lock_dir: Optional[str] = None,
                 transfer=None, transports=None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize replication executor.

        Args:
            job: ReplicationJob instance to execute
            lock_dir: Directory for the run lock marker (default: LOCK_DIR config)
            transfer: Transfer collaborator (default: RsyncTransfer)
            transports: (source, destination) transports (default: from settings)
            clock: Current-time source for snapshot names and retention
            sleep: Sleep function for retry backoff
        """
        self.job = job
        self.lock_dir = lock_dir
        self.transfer = transfer
        self.transports = transports
        self.clock = clock
        self.sleep = sleep or time.sleep
        self.run_record = None
        self.outcomes: List[Outcome] = []
        self.logs: List[str] = []
        self.lock_contended = False
        self._collector = None

    def execute(self) -> ReplicationRun:
        """
        Execute the replication job.

        Returns:
            ReplicationRun record with execution results
        """
        self.run_record = ReplicationRun(
            job_id=self.job.id,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()

        self._start_log_collection()
        self._log(f"Starting replication job: {self.job.name}")

        try:
            settings = JobSettings.from_job(
                self.job, connect_timeout=current_app.config.get('SSH_CONNECT_TIMEOUT', 5)
            )
            lock_dir = self.lock_dir or current_app.config['LOCK_DIR']

            with RunLock(lock_path_for(settings.name, lock_dir)):
                self._execute_workflow(settings)

            failed = [outcome for outcome in self.outcomes if not outcome.success]
            if failed:
                self.run_record.status = 'failed'
                self.run_record.error_message = (
                    f"{len(failed)} of {len(self.outcomes)} sources failed: "
                    + ', '.join(outcome.source_path for outcome in failed)
                )
                self._log(f"Replication finished with failures: {self.run_record.error_message}",
                          logging.ERROR)
            else:
                self.run_record.status = 'success'
                self._log("Replication completed successfully")

        except AlreadyRunning as e:
            self.lock_contended = True
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            self._log(f"Replication skipped: {e}", logging.WARNING)

        except (ConfigurationError, ReplicationError, TransportError) as e:
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            self._log(f"Replication aborted: {e}", logging.ERROR)

        except Exception as e:
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            logger.exception(f"Replication job {self.job.name} crashed")
            self._log(f"Replication failed: {e}", logging.ERROR)

        except BaseException as e:
            # SystemExit from the lock's signal handler, KeyboardInterrupt
            self.run_record.status = 'failed'
            self.run_record.error_message = f"Replication interrupted: {type(e).__name__}({e})"
            self._log(self.run_record.error_message, logging.ERROR)
            raise

        finally:
            self.run_record.completed_at = datetime.utcnow()
            self._stop_log_collection()
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.run_record

    def _execute_workflow(self, settings: JobSettings):
        """Execute the main replication workflow steps."""
        source_transport, destination_transport = self.transports or create_transports(settings)

        try:
            # Step 1: Environment checks
            self._pre_run_checks(settings, source_transport, destination_transport)

            # Step 2: Replicate each source
            transfer = self.transfer or RsyncTransfer(
                settings.rsync,
                source_transport,
                destination_transport,
                remote=settings.remote,
                binary=current_app.config.get('RSYNC_BINARY', 'rsync')
            )
            engine = ReplicationEngine(
                settings,
                transfer,
                source_transport,
                destination_transport,
                clock=self.clock,
                sleep=self.sleep
            )

            self.run_record.sources_total = len(settings.source_paths)
            seen_names = set()
            namespaces = []
            for source_path in settings.source_paths:
                namespace = resolve_namespace(source_path, seen_names)
                namespaces.append(namespace)
                self._log(f"Starting replication for source directory: {source_path} (namespace: {namespace})")

                outcome = engine.replicate(source_path, namespace)
                self.outcomes.append(outcome)
                self._record_outcome(outcome)

            # Step 3: Retention, only after every source has been attempted
            if settings.retention.enabled:
                self._enforce_retention(settings, destination_transport, namespaces)
            else:
                self._log("Retention policy: off, skipping")

        finally:
            source_transport.close()
            destination_transport.close()

    def _pre_run_checks(self, settings: JobSettings, source_transport, destination_transport):
        """
        Ensure rsync is installed, the remote host is reachable, and the
        destination root exists.

        Raises:
            ReplicationError: If rsync is missing
            TransportError: If the remote probe or directory creation fails
        """
        if self.transfer is None:
            binary = current_app.config.get('RSYNC_BINARY', 'rsync')
            if shutil.which(binary) is None:
                raise ReplicationError(f"rsync is not installed ({binary} not found)")

        if settings.remote is not None:
            self._log(f"Checking SSH connection to {settings.remote.target}...")
            remote_transport = source_transport if source_transport.is_remote else destination_transport
            remote_transport.probe()
            self._log(f"SSH connection to {settings.remote.target} is successful")

        if not destination_transport.is_dir(settings.destination_root):
            self._log(f"Destination directory {destination_transport.describe(settings.destination_root)} "
                      f"does not exist. Creating it.")
        destination_transport.makedirs(settings.destination_root)

    def _enforce_retention(self, settings: JobSettings, destination_transport, namespaces: List[str]):
        manager = RetentionManager(
            settings.retention,
            destination_transport,
            settings.destination_root,
            clock=self.clock
        )

        for namespace in namespaces:
            namespace_path = posixpath.join(settings.destination_root, namespace)
            try:
                result = manager.enforce(namespace_path, settings.replication_type)
            except TransportError as e:
                self._log(f"Retention for {namespace} failed: {e}", logging.ERROR)
                continue
            self.run_record.snapshots_evicted += len(result.evicted)

    def _record_outcome(self, outcome: Outcome):
        db.session.add(SourceResult(
            run=self.run_record,
            source_path=outcome.source_path,
            namespace=outcome.namespace,
            status='success' if outcome.success else 'failed',
            destination=outcome.destination,
            snapshot_path=outcome.snapshot_path,
            predecessor_path=outcome.predecessor_path,
            exit_code=outcome.exit_code,
            attempts=outcome.attempts,
            error_message=outcome.error
        ))
        if not outcome.success:
            self.run_record.sources_failed += 1
        db.session.commit()

    def _start_log_collection(self):
        self._collector = RunLogCollector()
        run_logger = logging.getLogger(RUN_LOGGER_NAME)
        self._previous_level = run_logger.level
        if run_logger.getEffectiveLevel() > logging.INFO:
            run_logger.setLevel(logging.INFO)
        run_logger.addHandler(self._collector)

    def _stop_log_collection(self):
        if self._collector is None:
            return
        run_logger = logging.getLogger(RUN_LOGGER_NAME)
        run_logger.removeHandler(self._collector)
        run_logger.setLevel(self._previous_level)
        self.logs = self._collector.lines
        self._collector = None

    def _log(self, message: str, level: int = logging.INFO):
        """
        Log a run message; it lands in the run's history logs as well.

        Args:
            message: Log message
            level: logging level
        """
        logger.log(level, message)


def execute_replication_job(job_id: int, allow_disabled: bool = False) -> ReplicationRun:
    """
    Execute a replication job by ID.

    Args:
        job_id: ID of ReplicationJob to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)

    Returns:
        ReplicationRun record with execution results

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = db.session.get(ReplicationJob, job_id)

    if not job:
        raise ValueError(f"Replication job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Replication job is disabled: {job.name}")

    executor = ReplicationExecutor(job)
    return executor.execute()


def execute_replication_job_by_name(job_name: str, allow_disabled: bool = False) -> ReplicationRun:
    """
    Execute a replication job by name.

    Args:
        job_name: Name of ReplicationJob to execute
        allow_disabled: If True, allow execution of disabled jobs

    Returns:
        ReplicationRun record with execution results

    Raises:
        ValueError: If job not found or disabled
    """
    job = ReplicationJob.query.filter_by(name=job_name).first()

    if not job:
        raise ValueError(f"Replication job not found: {job_name}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Replication job is disabled: {job_name}")

    executor = ReplicationExecutor(job)
    return executor.execute()
