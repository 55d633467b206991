"""
Replication module for the rsync replicator.

This module handles the core replication functionality including:
- Job settings validation
- Namespace resolution for source directories
- rsync transfers with bounded retries
- Incremental snapshots and mirrors
- Retention policy enforcement
- Single-instance run locking
- Execution orchestration
"""

from .executor import ReplicationExecutor
from .engine import ReplicationEngine
from .lock import RunLock, AlreadyRunning
from .naming import resolve_namespace, resolve_namespaces
from .retention import RetentionManager
from .retry import RetryPolicy
from .settings import JobSettings, ConfigurationError
from .transfer import RsyncTransfer
from .transport import LocalTransport, SSHTransport

__all__ = [
    'ReplicationExecutor',
    'ReplicationEngine',
    'RunLock',
    'AlreadyRunning',
    'resolve_namespace',
    'resolve_namespaces',
    'RetentionManager',
    'RetryPolicy',
    'JobSettings',
    'ConfigurationError',
    'RsyncTransfer',
    'LocalTransport',
    'SSHTransport'
]
