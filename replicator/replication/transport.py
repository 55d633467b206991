"""
Filesystem access on the replication destination (and source).

Supports:
- LocalTransport: paths on this host (os/shutil)
- SSHTransport: paths on a remote host via SSH commands (paramiko)

Both expose the same small interface the engine and retention manager need:
probe, makedirs, list_directories, is_dir, is_symlink, disk_usage,
remove_tree, rename, plus rsync_path() to render a path as an rsync argument.
"""

import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import List, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy


logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when a filesystem or remote command operation fails."""
    pass


class LocalTransport:
    """Filesystem operations on the local host."""

    is_remote = False

    def probe(self):
        """Local filesystem is always reachable."""
        pass

    def makedirs(self, path: str):
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransportError(f"Failed to create directory {path}: {e}")

    def list_directories(self, path: str) -> List[str]:
        """
        List names of directories (including symlinks to directories) in path.

        Returns:
            Entry names, or an empty list if path does not exist
        """
        if not os.path.isdir(path):
            return []
        try:
            with os.scandir(path) as entries:
                return [entry.name for entry in entries if entry.is_dir()]
        except OSError as e:
            raise TransportError(f"Failed to list {path}: {e}")

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_symlink(self, path: str) -> bool:
        return os.path.islink(path)

    def disk_usage(self, path: str) -> int:
        """
        Apparent size of everything under path, in bytes.

        Hard-linked files are counted once, like ``du -sb``.
        """
        if not os.path.exists(path):
            return 0

        seen_inodes = set()
        total = 0
        try:
            for root, dirs, files in os.walk(path):
                for name in dirs + files:
                    stat = os.lstat(os.path.join(root, name))
                    key = (stat.st_dev, stat.st_ino)
                    if key in seen_inodes:
                        continue
                    seen_inodes.add(key)
                    total += stat.st_size
        except OSError as e:
            raise TransportError(f"Failed to measure {path}: {e}")

        return total

    def remove_tree(self, path: str):
        try:
            if os.path.islink(path):
                os.unlink(path)
            else:
                shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransportError(f"Failed to remove {path}: {e}")

    def rename(self, source: str, target: str):
        """Rename a directory; target must not exist yet."""
        if os.path.lexists(target):
            raise TransportError(f"Failed to rename {source}: {target} already exists")
        try:
            os.rename(source, target)
        except OSError as e:
            raise TransportError(f"Failed to rename {source} to {target}: {e}")

    def rsync_path(self, path: str) -> str:
        return path

    def describe(self, path: str) -> str:
        return path

    def close(self):
        pass


class SSHTransport:
    """
    Filesystem operations on a remote host, executed as shell commands over
    SSH.

    Authentication is non-interactive only: an explicit private key, the SSH
    agent, or default keys in ~/.ssh.
    """

    is_remote = True

    def __init__(self, remote):
        """
        Initialize SSH transport.

        Args:
            remote: RemoteSettings with user, host, port, key_path and
                connect_timeout
        """
        self.remote = remote
        self.ssh_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            TransportError: If connection fails
        """
        if self.ssh_client is not None:
            return

        connect_kwargs = {
            'hostname': self.remote.host,
            'port': self.remote.port,
            'username': self.remote.user,
            'timeout': self.remote.connect_timeout,
            'banner_timeout': self.remote.connect_timeout,
            'auth_timeout': self.remote.connect_timeout,
            'allow_agent': True,
            'look_for_keys': True
        }

        if self.remote.key_path:
            key_path = Path(self.remote.key_path).expanduser()
            if not key_path.exists():
                raise TransportError(f"Private key not found: {self.remote.key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransportError(f"SSH authentication failed for {self.remote.target}: {e}")
        except paramiko.SSHException as e:
            client.close()
            raise TransportError(f"SSH connection to {self.remote.target} failed: {e}")
        except OSError as e:
            client.close()
            raise TransportError(f"Failed to connect to {self.remote.target}: {e}")

        self.ssh_client = client

    def _run(self, command: str) -> Tuple[int, str, str]:
        """
        Run a shell command on the remote host.

        Returns:
            (exit_status, stdout, stderr)
        """
        self._connect()
        try:
            _, stdout, stderr = self.ssh_client.exec_command(command)
            exit_status = stdout.channel.recv_exit_status()
            out = stdout.read().decode('utf-8', errors='replace')
            err = stderr.read().decode('utf-8', errors='replace')
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"Remote command failed on {self.remote.target}: {command}: {e}")
        return exit_status, out, err

    def _check(self, command: str) -> str:
        exit_status, out, err = self._run(command)
        if exit_status != 0:
            raise TransportError(
                f"Remote command exited with {exit_status} on {self.remote.target}: "
                f"{command}: {err.strip()}"
            )
        return out

    def probe(self):
        """
        Verify the remote host accepts a non-interactive session.

        Raises:
            TransportError: If the connection or a trivial command fails
        """
        self._check('true')

    def makedirs(self, path: str):
        self._check(f"mkdir -p -- {shlex.quote(path)}")

    def list_directories(self, path: str) -> List[str]:
        quoted = shlex.quote(path)
        exit_status, out, err = self._run(
            f"test -d {quoted} && find {quoted} -mindepth 1 -maxdepth 1 -xtype d -printf '%f\\n'"
        )
        if exit_status != 0:
            if err.strip():
                raise TransportError(f"Failed to list {self.describe(path)}: {err.strip()}")
            return []
        return [line for line in out.splitlines() if line]

    def is_dir(self, path: str) -> bool:
        return self._run(f"test -d {shlex.quote(path)}")[0] == 0

    def is_symlink(self, path: str) -> bool:
        return self._run(f"test -L {shlex.quote(path)}")[0] == 0

    def disk_usage(self, path: str) -> int:
        quoted = shlex.quote(path)
        exit_status, out, err = self._run(f"test -e {quoted} && du -sb {quoted}")
        if exit_status != 0:
            if err.strip():
                raise TransportError(f"Failed to measure {self.describe(path)}: {err.strip()}")
            return 0
        try:
            return int(out.split()[0])
        except (IndexError, ValueError):
            raise TransportError(f"Unexpected du output for {self.describe(path)}: {out!r}")

    def remove_tree(self, path: str):
        self._check(f"rm -rf -- {shlex.quote(path)}")

    def rename(self, source: str, target: str):
        # -T: never move source into an existing target directory
        self._check(f"mv -T -n -- {shlex.quote(source)} {shlex.quote(target)} && test ! -e {shlex.quote(source)}")

    def rsync_path(self, path: str) -> str:
        return f"{self.remote.target}:{path}"

    def describe(self, path: str) -> str:
        return self.rsync_path(path)

    def close(self):
        """Close SSH connection."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing SSH connection: {e}")
            self.ssh_client = None


def create_transports(settings):
    """
    Factory function to create source and destination transports for a job.

    Args:
        settings: JobSettings

    Returns:
        (source_transport, destination_transport)
    """
    if settings.transfer_mode == 'push':
        return LocalTransport(), SSHTransport(settings.remote)
    elif settings.transfer_mode == 'pull':
        return SSHTransport(settings.remote), LocalTransport()
    elif settings.transfer_mode == 'local':
        return LocalTransport(), LocalTransport()
    else:
        raise ValueError(f"Invalid transfer mode: {settings.transfer_mode}")
