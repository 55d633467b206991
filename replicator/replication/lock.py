"""
Single-instance guard for replication runs.

A run holds a marker file for its whole duration (replication and
retention). The marker is created atomically and removed on normal exit,
on exceptions, at interpreter exit, and on SIGTERM/SIGHUP.
"""

import atexit
import logging
import os
import signal
import threading
from typing import Optional


logger = logging.getLogger(__name__)

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ('SIGTERM', 'SIGHUP') if hasattr(signal, name)
)


class AlreadyRunning(Exception):
    """Raised when another run already holds the lock marker."""
    pass


class RunLock:
    """
    Lock marker for one replication job.

    Usage:
        with RunLock('/data/locks/nightly.lock'):
            ...
    """

    def __init__(self, path: str):
        self.path = path
        self._held = False
        self._previous_handlers = {}

    @property
    def held(self) -> bool:
        return self._held

    def read_owner(self) -> Optional[str]:
        """PID recorded in an existing marker, if readable."""
        try:
            with open(self.path, 'r') as f:
                return f.read().strip() or None
        except OSError:
            return None

    def acquire(self):
        """
        Create the lock marker.

        Raises:
            AlreadyRunning: If the marker already exists
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = self.read_owner()
            raise AlreadyRunning(
                f"Lock file {self.path} exists (held by pid {owner or 'unknown'}); "
                f"another run is in progress"
            )

        with os.fdopen(fd, 'w') as f:
            f.write(f"{os.getpid()}\n")

        self._held = True
        atexit.register(self.release)
        self._install_signal_handlers()
        logger.info(f"Acquired run lock {self.path}")

    def release(self):
        """Remove the lock marker if this instance holds it."""
        if not self._held:
            return

        self._held = False
        self._restore_signal_handlers()
        atexit.unregister(self.release)

        try:
            os.unlink(self.path)
            logger.info(f"Released run lock {self.path}")
        except FileNotFoundError:
            logger.warning(f"Run lock {self.path} was already removed")

    def _install_signal_handlers(self):
        # signal.signal() only works on the main thread; scheduler worker
        # threads rely on the context manager and atexit instead
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            self._previous_handlers.clear()
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame):
        logger.warning(f"Received signal {signum}, releasing run lock and exiting")
        self.release()
        raise SystemExit(128 + signum)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False
