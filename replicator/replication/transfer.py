"""
rsync transfer collaborator.

Builds the rsync command line for one source/destination pair and runs it,
returning rsync's exit code. Retry decisions are made by the caller.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional


logger = logging.getLogger(__name__)

# Lines of rsync output kept for logs
OUTPUT_TAIL_LINES = 20


class TransferError(Exception):
    """Raised when rsync cannot be started at all."""
    pass


@dataclass(frozen=True)
class TransferResult:
    exit_code: int
    output: str = ''

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def build_ssh_command(remote) -> str:
    """Remote shell command rsync uses for the SSH transport (-e)."""
    parts = ['ssh', '-p', str(remote.port), '-o', 'BatchMode=yes',
             '-o', f'ConnectTimeout={remote.connect_timeout}']
    if remote.key_path:
        parts.extend(['-i', remote.key_path])
    return ' '.join(shlex.quote(part) for part in parts)


class RsyncTransfer:
    """
    Runs rsync for one transfer.

    Source and destination are rendered through their transports, so a push
    yields ``/src/ user@host:/dest/`` and a pull ``user@host:/src/ /dest/``.
    """

    def __init__(self, options, source_transport, destination_transport,
                 remote=None, binary: str = 'rsync'):
        """
        Initialize rsync transfer.

        Args:
            options: RsyncOptions
            source_transport: Transport the source paths live on
            destination_transport: Transport the destination paths live on
            remote: RemoteSettings for push/pull, None for local
            binary: rsync executable
        """
        self.options = options
        self.source_transport = source_transport
        self.destination_transport = destination_transport
        self.remote = remote
        self.binary = binary

    def build_command(self, source: str, destination: str,
                      link_dest: Optional[str] = None) -> List[str]:
        """
        Build the rsync argument list.

        Args:
            source: Source directory
            destination: Destination directory
            link_dest: Previous snapshot to hard-link unchanged files against

        Returns:
            List of command arguments for subprocess
        """
        cmd = [self.binary]

        if self.options.archive:
            cmd.append('--archive')
        cmd.extend(['--human-readable', '--stats'])
        if self.options.delete:
            cmd.append('--delete')
        if self.options.checksum:
            cmd.append('--checksum')
        if self.options.compress:
            cmd.append('--compress')
        if self.options.partial:
            cmd.append('--partial')
        if self.options.timeout:
            cmd.append(f'--timeout={self.options.timeout}')

        if link_dest:
            cmd.append(f'--link-dest={link_dest}')

        if self.remote is not None:
            cmd.extend(['-e', build_ssh_command(self.remote)])

        # Trailing slashes: copy the contents of source into destination
        cmd.append(self.source_transport.rsync_path(source.rstrip('/') + '/'))
        cmd.append(self.destination_transport.rsync_path(destination.rstrip('/') + '/'))

        return cmd

    def run(self, source: str, destination: str,
            link_dest: Optional[str] = None) -> TransferResult:
        """
        Run rsync and wait for it to finish.

        Returns:
            TransferResult with rsync's exit code and the tail of its output

        Raises:
            TransferError: If rsync could not be executed
        """
        cmd = self.build_command(source, destination, link_dest)
        logger.debug(f"Running: {' '.join(shlex.quote(arg) for arg in cmd)}")

        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True
            )
        except OSError as e:
            raise TransferError(f"Failed to execute {self.binary}: {e}")

        output = '\n'.join(
            (completed.stdout + completed.stderr).strip().splitlines()[-OUTPUT_TAIL_LINES:]
        )
        return TransferResult(exit_code=completed.returncode, output=output)
