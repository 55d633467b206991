"""
Validated, immutable settings for one replication job.

ReplicationJob rows are free-form database records; everything the
replication core consumes goes through JobSettings.from_job() first, so
invalid modes, policies or missing parameters are rejected before any
transfer or retention action is attempted.
"""

import json
import posixpath
from dataclasses import dataclass, field
from typing import Optional, Tuple


TRANSFER_MODES = ('push', 'pull', 'local')
REPLICATION_TYPES = ('incremental', 'mirror')
RETENTION_POLICIES = ('off', 'time', 'count', 'storage')
RETENTION_SCOPES = ('namespace', 'root')


class ConfigurationError(Exception):
    """Raised when job configuration is invalid or incomplete."""
    pass


@dataclass(frozen=True)
class RemoteSettings:
    """SSH endpoint used for push/pull replication."""
    user: str
    host: str
    port: int = 22
    key_path: Optional[str] = None
    connect_timeout: int = 5

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Retention policy for a job.

    kind is one of RETENTION_POLICIES; only the parameter matching the kind
    is meaningful.
    """
    kind: str = 'off'
    days: Optional[int] = None
    count: Optional[int] = None
    max_bytes: Optional[int] = None
    scope: str = 'namespace'

    @property
    def enabled(self) -> bool:
        return self.kind != 'off'

    def describe(self) -> str:
        if self.kind == 'time':
            return f"time ({self.days} days)"
        if self.kind == 'count':
            return f"count (keep {self.count})"
        if self.kind == 'storage':
            return f"storage ({self.max_bytes} bytes, scope={self.scope})"
        return 'off'


@dataclass(frozen=True)
class RsyncOptions:
    """Flags passed to the rsync transfer."""
    archive: bool = True
    delete: bool = True
    checksum: bool = False
    compress: bool = True
    partial: bool = True
    timeout: Optional[int] = None


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    backoff_base: float = 30.0
    backoff_cap: float = 600.0


@dataclass(frozen=True)
class JobSettings:
    """Everything one run of a replication job needs, already validated."""
    name: str
    transfer_mode: str
    replication_type: str
    source_paths: Tuple[str, ...]
    destination_root: str
    remote: Optional[RemoteSettings] = None
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    retry: RetrySettings = field(default_factory=RetrySettings)
    rsync: RsyncOptions = field(default_factory=RsyncOptions)

    @property
    def is_remote(self) -> bool:
        return self.transfer_mode in ('push', 'pull')

    @property
    def incremental(self) -> bool:
        return self.replication_type == 'incremental'

    @classmethod
    def from_job(cls, job, connect_timeout: int = 5) -> 'JobSettings':
        """
        Build settings from a ReplicationJob model.

        Args:
            job: ReplicationJob instance (or any object with the same attributes)
            connect_timeout: SSH connect timeout in seconds for the remote probe

        Returns:
            JobSettings instance

        Raises:
            ConfigurationError: If any value is invalid or a required one is missing
        """
        if not job.name:
            raise ConfigurationError("Job name is required")

        if job.transfer_mode not in TRANSFER_MODES:
            raise ConfigurationError(
                f"Invalid transfer mode: {job.transfer_mode}. Valid options: {list(TRANSFER_MODES)}"
            )

        if job.replication_type not in REPLICATION_TYPES:
            raise ConfigurationError(
                f"Invalid replication type: {job.replication_type}. Valid options: {list(REPLICATION_TYPES)}"
            )

        source_paths = _parse_source_paths(job.source_paths)
        destination_root = _normalize_path(job.destination_root, 'Destination root')

        remote = None
        if job.transfer_mode in ('push', 'pull'):
            if not job.remote_user or not job.remote_host:
                raise ConfigurationError(
                    f"Remote user and host are required for {job.transfer_mode} mode"
                )
            port = _integer(job.remote_port, 'remote_port') or 22
            if not 0 < port < 65536:
                raise ConfigurationError(f"Invalid remote port: {port}")
            remote = RemoteSettings(
                user=job.remote_user,
                host=job.remote_host,
                port=port,
                key_path=job.ssh_key_path or None,
                connect_timeout=connect_timeout
            )

        retention = _build_retention(job)

        max_attempts = _integer(job.max_attempts, 'max_attempts', default=3)
        backoff_base = _integer(job.backoff_base_seconds, 'backoff_base_seconds', default=30)
        backoff_cap = _integer(job.backoff_cap_seconds, 'backoff_cap_seconds', default=600)
        if max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if backoff_base < 0 or backoff_cap < 0:
            raise ConfigurationError("Backoff bounds must not be negative")
        if backoff_cap < backoff_base:
            raise ConfigurationError("backoff_cap_seconds must be >= backoff_base_seconds")

        rsync_timeout = _integer(job.rsync_timeout, 'rsync_timeout')
        if rsync_timeout is not None and rsync_timeout < 0:
            raise ConfigurationError("rsync_timeout must not be negative")

        return cls(
            name=job.name,
            transfer_mode=job.transfer_mode,
            replication_type=job.replication_type,
            source_paths=source_paths,
            destination_root=destination_root,
            remote=remote,
            retention=retention,
            retry=RetrySettings(
                max_attempts=max_attempts,
                backoff_base=float(backoff_base),
                backoff_cap=float(backoff_cap)
            ),
            rsync=RsyncOptions(
                checksum=bool(job.rsync_checksum),
                compress=job.rsync_compress if job.rsync_compress is not None else True,
                partial=job.rsync_partial if job.rsync_partial is not None else True,
                timeout=rsync_timeout or None
            )
        )


def _integer(value, label: str, default: Optional[int] = None) -> Optional[int]:
    """Return an integer setting, or default when unset."""
    if value is None:
        return default
    # JSON true/false would pass as int
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")
    return value


def _normalize_path(path: Optional[str], label: str) -> str:
    if not path or not str(path).strip():
        raise ConfigurationError(f"{label} is required")
    path = str(path).strip()
    if not path.startswith('/'):
        raise ConfigurationError(f"{label} must be an absolute path: {path}")
    normalized = posixpath.normpath(path)
    if normalized == '/':
        raise ConfigurationError(f"{label} must not be the filesystem root")
    return normalized


def _parse_source_paths(raw) -> Tuple[str, ...]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ConfigurationError("Source paths must be a JSON list")

    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConfigurationError("At least one source path is required")

    paths = []
    for path in raw:
        normalized = _normalize_path(path, 'Source path')
        if normalized in paths:
            raise ConfigurationError(f"Duplicate source path: {normalized}")
        paths.append(normalized)

    return tuple(paths)


def _build_retention(job) -> RetentionPolicy:
    kind = job.retention_policy or 'off'
    if kind not in RETENTION_POLICIES:
        raise ConfigurationError(
            f"Invalid retention policy: {kind}. Valid options: {list(RETENTION_POLICIES)}"
        )

    scope = job.retention_scope or 'namespace'
    if scope not in RETENTION_SCOPES:
        raise ConfigurationError(
            f"Invalid retention scope: {scope}. Valid options: {list(RETENTION_SCOPES)}"
        )

    if kind == 'time':
        days = _integer(job.retention_days, 'retention_days')
        if days is None or days < 0:
            raise ConfigurationError("retention_days is required for time retention")
        return RetentionPolicy(kind='time', days=days)

    if kind == 'count':
        count = _integer(job.retention_count, 'retention_count')
        if count is None or count < 1:
            raise ConfigurationError("retention_count must be at least 1 for count retention")
        return RetentionPolicy(kind='count', count=count)

    if kind == 'storage':
        max_bytes = _integer(job.retention_max_bytes, 'retention_max_bytes')
        if max_bytes is None or max_bytes <= 0:
            raise ConfigurationError("retention_max_bytes must be positive for storage retention")
        return RetentionPolicy(kind='storage', max_bytes=max_bytes, scope=scope)

    return RetentionPolicy()
