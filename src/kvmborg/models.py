"""Data model shared by the classifier, strategies and orchestrator."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class PowerState(Enum):
    RUNNING = "running"
    SHUT_OFF = "shut-off"
    OTHER = "other"

    @classmethod
    def from_virsh(cls, text: str) -> "PowerState":
        """Map ``virsh domstate`` output to a power state."""
        state = text.strip().lower()
        if state == "running":
            return cls.RUNNING
        if state == "shut off":
            return cls.SHUT_OFF
        return cls.OTHER


class StorageCategory(Enum):
    VIRTUAL_DISK_FILE = "virtual-disk-file"
    BLOCK_DEVICE = "block-device"
    PARTITION = "partition"


class FilesystemFamily(Enum):
    NTFS = "ntfs"
    EXT = "ext"
    OTHER = "other"
    UNKNOWN = "unknown"

    @classmethod
    def from_fstype(cls, fstype: Optional[str]) -> "FilesystemFamily":
        """Group a probed filesystem type (``ext4``, ``ntfs``, ...) into a family."""
        value = (fstype or "").strip().lower()
        if not value or value == "unknown":
            return cls.UNKNOWN
        if value == "ntfs":
            return cls.NTFS
        if value.startswith("ext"):
            return cls.EXT
        return cls.OTHER


class ArchiveStrategy(Enum):
    PLAIN_FILES = "plain-files"
    RAW_SPECIAL = "raw-special"
    NTFS_CLONE = "ntfs-clone"


UNKNOWN_FSTYPE = "unknown"


@dataclass(frozen=True)
class StorageItem:
    """One piece of storage attached to a machine.

    ``fstype`` is the probed filesystem type for device-backed items
    (``"unknown"`` when it could not be determined) and ``None`` for image
    files. ``parent`` is the owning block device of a partition.
    """

    path: str
    category: StorageCategory
    fstype: Optional[str] = None
    parent: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path.rstrip("/"))

    @property
    def family(self) -> FilesystemFamily:
        return FilesystemFamily.from_fstype(self.fstype)

    @property
    def is_device(self) -> bool:
        return self.category is not StorageCategory.VIRTUAL_DISK_FILE


@dataclass
class Machine:
    """A machine under backup, with the power state it was found in."""

    name: str
    state: PowerState = PowerState.OTHER
    storage: List[StorageItem] = field(default_factory=list)


@dataclass(frozen=True)
class RetentionPolicy:
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6

    def as_borg_args(self) -> List[str]:
        return [
            "--keep-daily", str(self.keep_daily),
            "--keep-weekly", str(self.keep_weekly),
            "--keep-monthly", str(self.keep_monthly),
        ]


@dataclass(frozen=True)
class ArchiveJob:
    """A single ``borg create`` to perform for one machine."""

    machine: str
    kind: str
    subject: str
    name: str
    strategy: ArchiveStrategy
    sources: Tuple[str, ...]
    zero_free_space: bool = False

    @property
    def glob(self) -> str:
        """Glob matching every archive of this job's archive set."""
        # Narrower than {machine}-*: retention counts apply per archive set
        return f"{self.machine}-{self.kind}-{self.subject}-*"


@dataclass
class ArchiveResult:
    name: str
    output: str = ""


@dataclass
class PruneResult:
    glob: str
    pruned: List[str] = field(default_factory=list)
    output: str = ""


@dataclass
class MachineReport:
    """Outcome of one machine's backup lifecycle."""

    name: str
    was_running: bool = False
    restarted: bool = False
    skipped: Optional[str] = None
    archived: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.errors


@dataclass
class RunSummary:
    reports: List[MachineReport] = field(default_factory=list)

    @property
    def backed_up(self) -> List[MachineReport]:
        return [r for r in self.reports if r.skipped is None]

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.reports)

    def summary_line(self) -> str:
        processed = self.backed_up
        failed = [r.name for r in processed if not r.ok]
        skipped = len(self.reports) - len(processed)
        line = (
            f"Backup process completed: {len(processed)} VM(s) processed, "
            f"{len(processed) - len(failed)} ok, {len(failed)} with errors, {skipped} skipped"
        )
        if failed:
            line += f" (failed: {', '.join(failed)})"
        return line
