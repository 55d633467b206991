"""
Retention policy enforcement for replicated snapshots.

Runs once per namespace after every source of the run has been replicated,
and evicts snapshots according to the job's policy:
- time: snapshots older than N days
- count: all but the N most recent snapshots
- storage: oldest snapshots until usage drops under a byte cap
"""

import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .snapshots import MIRROR, Snapshot, list_snapshots, parse_timestamp
from .transport import TransportError


logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    """What one enforcement pass did to a namespace."""
    namespace_path: str
    policy: str
    evicted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)


class RetentionManager:
    """
    Manages retention policy enforcement for one job's namespaces.

    Eviction is immediate and irreversible. Before removing an incremental
    snapshot, check_eviction_safety() must pass; a failed check keeps the
    snapshot and logs a warning. Newer snapshots never depend on an evicted
    one: --link-dest creates hard links, and the file data survives as long
    as any snapshot still links it.
    """

    def __init__(self, policy, transport, destination_root: str,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize retention manager.

        Args:
            policy: RetentionPolicy
            transport: Transport of the destination
            destination_root: Root containing all namespaces
            clock: Returns the current time (default: datetime.utcnow)
        """
        self.policy = policy
        self.transport = transport
        self.destination_root = destination_root
        self.clock = clock or datetime.utcnow

    def enforce(self, namespace_path: str, mode: str) -> RetentionResult:
        """
        Enforce the retention policy for one namespace.

        Args:
            namespace_path: ``<destination_root>/<namespace>``
            mode: 'incremental' or 'mirror'

        Returns:
            RetentionResult

        Raises:
            TransportError: If the namespace cannot be listed or measured
        """
        result = RetentionResult(namespace_path=namespace_path, policy=self.policy.describe())

        if not self.policy.enabled:
            return result

        snapshots = list_snapshots(self.transport, namespace_path, mode)
        logger.info(
            f"Enforcing retention policy {self.policy.describe()} on "
            f"{self.transport.describe(namespace_path)} ({len(snapshots)} snapshots)"
        )

        if self.policy.kind == 'time':
            remaining = self._enforce_time(snapshots, result)
        elif self.policy.kind == 'count':
            remaining = self._enforce_count(snapshots, result)
        elif self.policy.kind == 'storage':
            remaining = self._enforce_storage(snapshots, result)
        else:
            raise ValueError(f"Invalid retention policy: {self.policy.kind}")

        result.retained = [snapshot.path for snapshot in remaining]
        logger.info(
            f"Retention for {self.transport.describe(namespace_path)} complete. "
            f"Evicted: {len(result.evicted)}, Skipped: {len(result.skipped)}, "
            f"Retained: {len(result.retained)}"
        )
        return result

    def _enforce_time(self, snapshots: List[Snapshot], result: RetentionResult) -> List[Snapshot]:
        cutoff = self.clock() - timedelta(days=self.policy.days)

        remaining = []
        for snapshot in snapshots:
            if snapshot.timestamp is None:
                # Mirrors carry source mtimes, so their age is unknown
                logger.info(f"Time retention does not apply to mirror {snapshot.path}, keeping it")
                remaining.append(snapshot)
            elif snapshot.timestamp < cutoff:
                if not self._evict(snapshot, result):
                    remaining.append(snapshot)
            else:
                remaining.append(snapshot)

        return remaining

    def _enforce_count(self, snapshots: List[Snapshot], result: RetentionResult) -> List[Snapshot]:
        excess = len(snapshots) - self.policy.count
        if excess <= 0:
            return list(snapshots)

        remaining = []
        for snapshot in snapshots[:excess]:
            if not self._evict(snapshot, result):
                remaining.append(snapshot)

        return remaining + list(snapshots[excess:])

    def _enforce_storage(self, snapshots: List[Snapshot], result: RetentionResult) -> List[Snapshot]:
        if self.policy.scope == 'root':
            usage_path = self.destination_root
        else:
            usage_path = result.namespace_path

        candidates = list(snapshots)
        kept = []
        usage = self.transport.disk_usage(usage_path)
        logger.info(
            f"Storage used by {self.transport.describe(usage_path)}: {usage} bytes "
            f"(cap {self.policy.max_bytes})"
        )

        while usage > self.policy.max_bytes and candidates:
            victim = candidates.pop(0)
            if self._evict(victim, result):
                usage = self.transport.disk_usage(usage_path)
                logger.info(f"Storage used after eviction: {usage} bytes")
            else:
                kept.append(victim)

        if usage > self.policy.max_bytes:
            logger.warning(
                f"Storage cap of {self.policy.max_bytes} bytes still exceeded by "
                f"{self.transport.describe(usage_path)} ({usage} bytes) with no evictable snapshots left"
            )

        return kept + candidates

    def check_eviction_safety(self, snapshot: Snapshot, namespace_path: str) -> Optional[str]:
        """
        Decide whether a snapshot may be physically removed.

        Mirrors have no chain and are always removable. An incremental
        snapshot must be a real directory directly inside its namespace and
        carry a timestamp name; anything else may be a link into, or a
        parent of, data that retained snapshots use.

        Returns:
            None if safe, otherwise the reason the deletion must be skipped
        """
        if snapshot.mode == MIRROR:
            return None

        parent = posixpath.dirname(posixpath.normpath(snapshot.path))
        if parent != posixpath.normpath(namespace_path):
            return f"{snapshot.path} is not directly inside {namespace_path}"

        if parse_timestamp(posixpath.basename(snapshot.path)) is None:
            return f"{snapshot.path} is not named like a snapshot"

        if self.transport.is_symlink(snapshot.path):
            return f"{snapshot.path} is a symlink"

        if not self.transport.is_dir(snapshot.path):
            return f"{snapshot.path} is not a directory"

        return None

    def _evict(self, snapshot: Snapshot, result: RetentionResult) -> bool:
        """
        Remove a snapshot after the safety check.

        Returns:
            True if the snapshot was removed
        """
        label = self.transport.describe(snapshot.path)

        reason = self.check_eviction_safety(snapshot, result.namespace_path)
        if reason:
            logger.warning(f"Skipping eviction of {label}: {reason}")
            result.skipped.append(snapshot.path)
            return False

        try:
            self.transport.remove_tree(snapshot.path)
        except TransportError as e:
            logger.error(f"Failed to evict {label}: {e}")
            result.skipped.append(snapshot.path)
            return False

        logger.info(f"Evicted snapshot {label}")
        result.evicted.append(snapshot.path)
        return True
