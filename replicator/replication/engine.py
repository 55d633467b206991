"""
Replication engine - one source, one snapshot.

Workflow per source:
1. Plan the destination (timestamped snapshot or in-place mirror)
2. Select the incremental predecessor for --link-dest
3. Create the in-progress directory, or take over the one an earlier
   failed attempt left behind
4. Run rsync under the retry policy
5. On success rename the in-progress directory to its snapshot name
6. Report an Outcome; nothing is ever deleted here
"""

import logging
import posixpath
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .retry import AttemptStatus, RetryPolicy
from .snapshots import (
    INCREMENTAL, MIRROR, Snapshot, format_timestamp, in_progress_name,
    list_in_progress, list_snapshots
)
from .transfer import TransferError
from .transport import TransportError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotPlan:
    """
    Where a snapshot will be written and what it links against.

    rsync writes into ``working_path``; for incremental snapshots that is the
    in-progress name, renamed to ``destination`` once the transfer succeeded.
    ``resume_from`` is the newest unfinished attempt, reused as working
    directory so rsync only sends what is still missing.
    """
    source_path: str
    namespace: str
    namespace_path: str
    destination: str
    mode: str
    working_path: str
    timestamp: Optional[datetime] = None
    predecessor: Optional[Snapshot] = None
    resume_from: Optional[str] = None


@dataclass
class Outcome:
    """Result of replicating one source."""
    success: bool
    source_path: str
    namespace: str
    destination: str
    snapshot: Optional[Snapshot] = None
    exit_code: Optional[int] = None
    attempts: int = 0
    backoff_history: List[float] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def snapshot_path(self) -> Optional[str]:
        return self.snapshot.path if self.snapshot else None

    @property
    def predecessor_path(self) -> Optional[str]:
        return self.snapshot.predecessor_path if self.snapshot else None


def select_predecessor(snapshots: List[Snapshot], before: datetime) -> Optional[Snapshot]:
    """
    Most recent snapshot strictly older than ``before``.

    Args:
        snapshots: Existing incremental snapshots, in any order
        before: Timestamp of the snapshot being created

    Returns:
        Snapshot with the greatest timestamp below ``before``, or None
    """
    candidates = [s for s in snapshots if s.timestamp is not None and s.timestamp < before]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s.timestamp)


class ReplicationEngine:
    """
    Replicates configured sources into snapshots under the destination root.
    """

    def __init__(self, settings, transfer, source_transport, destination_transport,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize replication engine.

        Args:
            settings: JobSettings of the job being run
            transfer: Transfer collaborator with run(source, destination, link_dest)
            source_transport: Transport the source paths live on
            destination_transport: Transport the destination root lives on
            retry_policy: Retry policy (default: built from settings.retry)
            clock: Returns the current time (default: datetime.utcnow)
            sleep: Blocks for the given seconds (default: time.sleep)
        """
        self.settings = settings
        self.transfer = transfer
        self.source_transport = source_transport
        self.destination_transport = destination_transport
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings.retry)
        self.clock = clock or datetime.utcnow
        self.sleep = sleep or time.sleep

    def namespace_path(self, namespace: str) -> str:
        return posixpath.join(self.settings.destination_root, namespace)

    def plan(self, source_path: str, namespace: str) -> SnapshotPlan:
        """
        Compute the destination of the next snapshot.

        The timestamp is taken from the clock at invocation and pushed past
        the newest existing snapshot if needed, so snapshot names always
        increase.

        Returns:
            SnapshotPlan
        """
        namespace_path = self.namespace_path(namespace)

        if not self.settings.incremental:
            return SnapshotPlan(
                source_path=source_path,
                namespace=namespace,
                namespace_path=namespace_path,
                destination=namespace_path,
                mode=MIRROR,
                working_path=namespace_path
            )

        existing = list_snapshots(self.destination_transport, namespace_path, INCREMENTAL)
        unfinished = list_in_progress(self.destination_transport, namespace_path)

        timestamp = self.clock().replace(microsecond=0)
        if existing and existing[-1].timestamp >= timestamp:
            timestamp = existing[-1].timestamp.replace(microsecond=0) + timedelta(seconds=1)

        name = format_timestamp(timestamp)
        return SnapshotPlan(
            source_path=source_path,
            namespace=namespace,
            namespace_path=namespace_path,
            destination=posixpath.join(namespace_path, name),
            mode=INCREMENTAL,
            working_path=posixpath.join(namespace_path, in_progress_name(name)),
            timestamp=timestamp,
            predecessor=select_predecessor(existing, timestamp),
            resume_from=unfinished[-1] if unfinished else None
        )

    def replicate(self, source_path: str, namespace: str) -> Outcome:
        """
        Replicate one source into a new snapshot.

        Args:
            source_path: Source directory
            namespace: Namespace resolved for this source

        Returns:
            Outcome (success with the snapshot, or failure with the last exit code)
        """
        try:
            plan = self.plan(source_path, namespace)
        except TransportError as e:
            logger.error(f"Failed to plan snapshot for {source_path}: {e}")
            return Outcome(
                success=False,
                source_path=source_path,
                namespace=namespace,
                destination=self.namespace_path(namespace),
                error=str(e)
            )

        destination_label = self.destination_transport.describe(plan.destination)
        logger.info(
            f"Starting {plan.mode} replication: "
            f"{self.source_transport.describe(source_path)} -> {destination_label}"
        )

        try:
            link_dest = self._link_dest(plan)

            if not self.source_transport.is_dir(source_path):
                message = f"Source directory does not exist: {self.source_transport.describe(source_path)}"
                logger.error(message)
                return self._failure(plan, error=message)

            self._prepare_working_path(plan)
        except TransportError as e:
            logger.error(f"Failed to prepare {destination_label}: {e}")
            return self._failure(plan, error=str(e))

        state = self.retry_policy.start()
        while True:
            logger.info(
                f"Transfer attempt {state.attempt_number}/{self.retry_policy.max_attempts} "
                f"for {source_path}"
            )
            try:
                result = self.transfer.run(source_path, plan.working_path, link_dest)
            except TransferError as e:
                logger.error(f"Transfer for {source_path} could not be started: {e}")
                return self._failure(
                    plan, error=str(e), attempts=state.attempt_number,
                    backoff_history=state.backoff_history
                )

            state = self.retry_policy.advance(state, result.exit_code)

            if state.status is AttemptStatus.RETRYABLE:
                logger.warning(
                    f"Transfer {source_path} -> {destination_label} exited with code "
                    f"{result.exit_code} (transient) on attempt {state.attempt_number}; "
                    f"retrying in {state.current_backoff_seconds:g}s"
                )
                if result.output:
                    logger.debug(result.output)
                self.sleep(state.current_backoff_seconds)
                state = state.next_attempt()
                continue

            break

        if state.status is AttemptStatus.SUCCESS:
            if plan.working_path != plan.destination:
                try:
                    self.destination_transport.rename(plan.working_path, plan.destination)
                except TransportError as e:
                    message = f"Failed to finalize snapshot {destination_label}: {e}"
                    logger.error(message)
                    return self._failure(
                        plan, error=message, exit_code=0, attempts=state.attempt_number,
                        backoff_history=state.backoff_history
                    )

            snapshot = Snapshot(
                name=posixpath.basename(plan.destination),
                path=plan.destination,
                mode=plan.mode,
                timestamp=plan.timestamp,
                predecessor_path=link_dest
            )
            logger.info(
                f"Replication of {source_path} succeeded after {state.attempt_number} "
                f"attempt(s): {destination_label}"
            )
            return Outcome(
                success=True,
                source_path=source_path,
                namespace=namespace,
                destination=plan.destination,
                snapshot=snapshot,
                exit_code=0,
                attempts=state.attempt_number,
                backoff_history=state.backoff_history
            )

        if state.exhausted:
            reason = f"retries exhausted after {state.attempt_number} attempts"
        else:
            reason = f"fatal exit code on attempt {state.attempt_number}"
        message = (
            f"Replication of {source_path} -> {destination_label} failed: "
            f"rsync exited with code {state.last_code} ({reason})"
        )
        logger.error(message)
        if result.output:
            logger.error(result.output)
        if plan.working_path != plan.destination:
            logger.info(
                f"Unfinished attempt kept for the next run: "
                f"{self.destination_transport.describe(plan.working_path)}"
            )

        return self._failure(
            plan, error=message, exit_code=state.last_code,
            attempts=state.attempt_number, backoff_history=state.backoff_history
        )

    def _prepare_working_path(self, plan: SnapshotPlan):
        if plan.resume_from and plan.resume_from != plan.working_path:
            logger.info(f"Resuming unfinished attempt {posixpath.basename(plan.resume_from)}")
            self.destination_transport.rename(plan.resume_from, plan.working_path)
            return
        self.destination_transport.makedirs(plan.working_path)

    def _link_dest(self, plan: SnapshotPlan) -> Optional[str]:
        """Validate the predecessor hint; a bad hint only costs a full copy."""
        if plan.mode != INCREMENTAL:
            return None

        if plan.predecessor is None:
            logger.info(f"No previous snapshot in {plan.namespace}, creating a full copy")
            return None

        path = plan.predecessor.path
        if not self.destination_transport.is_dir(path):
            logger.warning(
                f"Warning: --link-dest arg does not exist: "
                f"{self.destination_transport.describe(path)}, skipping link-dest option"
            )
            return None

        logger.info(f"Linking unchanged files against previous snapshot {plan.predecessor.name}")
        return path

    def _failure(self, plan: SnapshotPlan, error: str, exit_code: Optional[int] = None,
                 attempts: int = 0, backoff_history: Optional[List[float]] = None) -> Outcome:
        return Outcome(
            success=False,
            source_path=plan.source_path,
            namespace=plan.namespace,
            destination=plan.destination,
            exit_code=exit_code,
            attempts=attempts,
            backoff_history=list(backoff_history or []),
            error=error
        )
