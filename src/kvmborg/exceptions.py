"""Exceptions raised while orchestrating a backup run.

Exception Hierarchy:
    KvmBorgError (base)
        ├── PreconditionError         aborts the whole run
        │   ├── RepositoryInvalidError
        │   ├── UnknownMachineError
        │   └── LockHeldError
        ├── DiscoveryError            aborts one machine
        ├── RepositoryError           aborts one archive or prune
        └── PowerTransitionError      aborts one machine

Errors built from a failed external command keep the command line, exit
status and captured stderr so the tool's own diagnostic reaches the log.
"""

from typing import Optional, Sequence


class KvmBorgError(Exception):
    """Base exception for kvm-borg."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.command = list(command) if command else None
        self.returncode = returncode
        self.stderr = stderr.strip() if stderr else ""
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class PreconditionError(KvmBorgError):
    """A run cannot start; nothing has been touched."""


class RepositoryInvalidError(PreconditionError):
    """The repository reference is missing or not a borg repository."""


class UnknownMachineError(PreconditionError):
    """The explicitly named machine is not known to the hypervisor."""

    def __init__(self, machine: str, stderr: str = ""):
        self.machine = machine
        super().__init__(f"The specified VM does not exist: {machine}", stderr=stderr)


class LockHeldError(PreconditionError):
    """Another live instance owns the lock file."""

    def __init__(self, lock_file: str, pid: int):
        self.lock_file = lock_file
        self.pid = pid
        super().__init__(f"Another instance is already running (pid {pid}, lock {lock_file})")


class DiscoveryError(KvmBorgError):
    """The hypervisor could not report a machine's state or storage."""


class RepositoryError(KvmBorgError):
    """A borg archive, prune or init call failed."""


class PowerTransitionError(KvmBorgError):
    """A shutdown or start request failed, or shutdown timed out."""
