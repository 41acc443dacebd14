"""Process-wide lock so only one backup run touches the machines at a time.

The lock is a file holding the owner's PID. A file whose PID no longer
belongs to a live process is stale and is reclaimed.

Usage:
    with SingleInstanceLock(config.lock_file, notifier):
        ...  # lock file removed on return, exception, SIGINT or SIGTERM
"""

import os
import signal
from typing import Dict, Optional

from .exceptions import LockHeldError
from .utils import NotificationManager


HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class SingleInstanceLock:
    """PID lock file with signal-safe release."""

    def __init__(self, path: str, notifier: Optional[NotificationManager] = None,
                 pid: Optional[int] = None):
        self.path = path
        self.notifier = notifier
        self.pid = os.getpid() if pid is None else pid
        self.held = False
        self._previous_handlers: Dict[int, object] = {}

    def _log(self, message: str) -> None:
        if self.notifier:
            self.notifier.info(message)

    def read_owner(self) -> Optional[int]:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            with open(self.path, 'r') as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> "SingleInstanceLock":
        """Create the lock file, reclaiming it if stale.

        Raises:
            LockHeldError: the recorded owner is still alive
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.read_owner()
                if owner is not None and owner != self.pid and pid_alive(owner):
                    raise LockHeldError(self.path, owner)
                self._log(f"Removing stale lock file {self.path} (pid {owner})")
                try:
                    os.unlink(self.path)
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, 'w') as f:
                f.write(f"{self.pid}\n")
            self.held = True
            self._install_signal_handlers()
            self._log(f"Acquired lock {self.path}")
            return self

        # Another process recreated the file between our unlink and open
        owner = self.read_owner()
        raise LockHeldError(self.path, owner if owner is not None else -1)

    def release(self) -> None:
        """Remove the lock file. Safe to call more than once."""
        self._restore_signal_handlers()
        if not self.held:
            return
        self.held = False
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        self._log(f"Released lock {self.path}")

    def _handle_signal(self, signum, frame):
        if self.notifier:
            self.notifier.warning(f"Received signal {signum}, releasing lock and exiting")
        self.release()
        raise SystemExit(128 + signum)

    def _install_signal_handlers(self) -> None:
        for signum in HANDLED_SIGNALS:
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # Not the main thread; rely on the context manager alone
                pass

    def _restore_signal_handlers(self) -> None:
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            try:
                signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
            except ValueError:
                pass

    def __enter__(self) -> "SingleInstanceLock":
        return self.acquire()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()
