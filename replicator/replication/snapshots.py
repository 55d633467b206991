"""
Snapshot naming and discovery.

Incremental snapshots live in ``<destination_root>/<namespace>/<timestamp>``
where the directory name encodes the creation time (UTC). Ordering always uses
the parsed datetime, never the directory listing order or a string sort.

A transfer writes into ``in_progress_<timestamp>`` and the directory is renamed
to ``<timestamp>`` only once rsync succeeded, so anything carrying the prefix
is an unfinished attempt and never counts as a snapshot.
"""

import posixpath
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional


TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M%S'

# Minute-resolution names written by older versions of the shell script.
# The script named them with `date`, so they are in the host's local time.
LEGACY_TIMESTAMP_FORMATS = ('%Y-%m-%d_%H%M',)

IN_PROGRESS_PREFIX = 'in_progress_'

INCREMENTAL = 'incremental'
MIRROR = 'mirror'


@dataclass(frozen=True)
class Snapshot:
    """One replication instance within a namespace."""
    name: str
    path: str
    mode: str
    timestamp: Optional[datetime] = None
    predecessor_path: Optional[str] = None


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(name: str) -> Optional[datetime]:
    """
    Parse a snapshot directory name into its creation time.

    Args:
        name: Directory name

    Returns:
        Naive UTC datetime if name is a snapshot timestamp, None otherwise
    """
    for fmt in (TIMESTAMP_FORMAT,) + LEGACY_TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(name, fmt)
        except ValueError:
            continue
        # strptime accepts unpadded fields; only canonical names count
        if parsed.strftime(fmt) != name:
            continue
        if fmt in LEGACY_TIMESTAMP_FORMATS:
            # naive astimezone() treats the value as local time
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def in_progress_name(name: str) -> str:
    return f"{IN_PROGRESS_PREFIX}{name}"


def list_in_progress(transport, namespace_path: str) -> List[str]:
    """
    Paths of unfinished snapshot attempts in a namespace, oldest first.
    """
    pending = []
    for name in transport.list_directories(namespace_path):
        if not name.startswith(IN_PROGRESS_PREFIX):
            continue
        timestamp = parse_timestamp(name[len(IN_PROGRESS_PREFIX):])
        if timestamp is not None:
            pending.append((timestamp, posixpath.join(namespace_path, name)))

    pending.sort()
    return [path for _, path in pending]


def list_snapshots(transport, namespace_path: str, mode: str) -> List[Snapshot]:
    """
    List the snapshots of one namespace, oldest first.

    Incremental: every subdirectory whose name parses as a timestamp.
    In-progress attempts are not snapshots and are skipped.
    Mirror: the namespace directory itself, if it exists.

    Args:
        transport: Transport of the destination
        namespace_path: ``<destination_root>/<namespace>``
        mode: 'incremental' or 'mirror'

    Returns:
        List of Snapshot, ordered by timestamp
    """
    if mode == MIRROR:
        if transport.is_dir(namespace_path):
            return [Snapshot(
                name=posixpath.basename(namespace_path),
                path=namespace_path,
                mode=MIRROR
            )]
        return []

    snapshots = []
    for name in transport.list_directories(namespace_path):
        timestamp = parse_timestamp(name)
        if timestamp is None:
            continue
        snapshots.append(Snapshot(
            name=name,
            path=posixpath.join(namespace_path, name),
            mode=INCREMENTAL,
            timestamp=timestamp
        ))

    snapshots.sort(key=lambda snapshot: snapshot.timestamp)
    return snapshots
