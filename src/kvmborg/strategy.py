"""Choosing and running the archive procedure for each storage item.

| category                  | filesystem   | strategy                       |
|---------------------------|--------------|--------------------------------|
| virtual-disk-file         | -            | plain-files (bundled with XML) |
| partition / block-device  | ntfs         | ntfs-clone stream              |
| partition / block-device  | ext*         | raw-special after zerofree     |
| partition / block-device  | other        | raw-special                    |
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .disk_tools import DiskInspector
from .models import (
    ArchiveJob,
    ArchiveResult,
    ArchiveStrategy,
    FilesystemFamily,
    StorageCategory,
    StorageItem,
)
from .repository import BorgRepository
from .utils import NotificationManager, generate_timestamp


BUNDLE_KIND = "vm"
BUNDLE_SUBJECT = "bundle"


def select_strategy(item: StorageItem) -> ArchiveStrategy:
    """Map a storage item to its archive strategy.

    Total over every category and filesystem family; anything not
    recognised is archived as a raw special file.
    """
    if item.category is StorageCategory.VIRTUAL_DISK_FILE:
        return ArchiveStrategy.PLAIN_FILES
    if item.family is FilesystemFamily.NTFS:
        return ArchiveStrategy.NTFS_CLONE
    return ArchiveStrategy.RAW_SPECIAL


def needs_zero_free_space(item: StorageItem) -> bool:
    """Only ext filesystems on devices get the zerofree pre-pass."""
    return item.is_device and item.family is FilesystemFamily.EXT


class ArchiveNamer:
    """Produce ``{machine}-{kind}-{subject}-{timestamp}`` archive names.

    Timestamps have one-second resolution and strictly increase across a
    run: if the clock has not moved past the last issued second, the next
    second is used instead, so names never collide.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._last: Optional[datetime] = None

    def next_timestamp(self) -> str:
        now = self._clock().replace(microsecond=0)
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(seconds=1)
        self._last = now
        return generate_timestamp(now)

    def name(self, machine: str, kind: str, subject: str) -> str:
        return f"{machine}-{kind}-{subject}-{self.next_timestamp()}"


class ArchivePlanner:
    """Turn a classified machine into its list of archive jobs."""

    def __init__(self, namer: ArchiveNamer):
        self.namer = namer

    def plan(self, machine: str, items: Sequence[StorageItem], config_document: Path) -> List[ArchiveJob]:
        """Build the jobs for one machine.

        The first job bundles the exported definition with every image file
        (it exists even when there are no image files); each device-backed
        item then gets its own job, in classification order.
        """
        files = [item.path for item in items if select_strategy(item) is ArchiveStrategy.PLAIN_FILES]
        jobs = [ArchiveJob(
            machine=machine,
            kind=BUNDLE_KIND,
            subject=BUNDLE_SUBJECT,
            name=self.namer.name(machine, BUNDLE_KIND, BUNDLE_SUBJECT),
            strategy=ArchiveStrategy.PLAIN_FILES,
            sources=tuple([str(config_document)] + files),
        )]

        for item in items:
            if not item.is_device:
                continue
            kind = "partition" if item.category is StorageCategory.PARTITION else "disk"
            jobs.append(ArchiveJob(
                machine=machine,
                kind=kind,
                subject=item.name,
                name=self.namer.name(machine, kind, item.name),
                strategy=select_strategy(item),
                sources=(item.path,),
                zero_free_space=needs_zero_free_space(item),
            ))
        return jobs


class StrategyRunner:
    """Execute archive jobs against a borg repository."""

    def __init__(self, repository: BorgRepository, disks: DiskInspector,
                 notifier: NotificationManager, compression: Optional[str] = None):
        self.repository = repository
        self.disks = disks
        self.notifier = notifier
        self.compression = compression

    def prepare(self, job: ArchiveJob) -> bool:
        """Run the job's pre-archive pass, if any.

        A failed zerofree only costs deduplication, so it is logged and the
        device is still archived.

        Returns:
            False if a pre-pass ran and failed
        """
        if not job.zero_free_space:
            return True
        ok = True
        for source in job.sources:
            result = self.disks.zero_free_space(source)
            if not result.ok:
                self.notifier.warning(f"zerofree failed on {source}, archiving without it: {result.diagnostic}")
                ok = False
        return ok

    def execute(self, repo: str, job: ArchiveJob) -> ArchiveResult:
        """Create the job's archive.

        Raises:
            RepositoryError: borg or the clone tool failed
        """
        if job.strategy is ArchiveStrategy.PLAIN_FILES:
            self.notifier.info(f"Backing up disks for VM: {job.machine}")
            return self.repository.archive(repo, job.name, job.sources, compression=self.compression)

        if job.strategy is ArchiveStrategy.RAW_SPECIAL:
            self.notifier.info(f"Backing up {job.kind}: {job.sources[0]} (raw)")
            return self.repository.archive(repo, job.name, job.sources, compression=self.compression,
                                           read_special=True)

        if job.strategy is ArchiveStrategy.NTFS_CLONE:
            self.notifier.info(f"Backing up NTFS {job.kind}: {job.sources[0]}")
            with self.disks.ntfs_clone_stream(job.sources[0]) as stream:
                return self.repository.archive_stream(repo, job.name, stream, compression=self.compression)

        raise ValueError(f"Unhandled archive strategy: {job.strategy}")
