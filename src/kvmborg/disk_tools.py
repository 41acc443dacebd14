"""Partition enumeration, filesystem probing and pre-archive disk passes.

Wraps ``lsblk``, ``zerofree`` and ``ntfsclone``. None of these calls are made
against a running machine's devices: the orchestrator only reaches them once
the owning machine is shut off.
"""

import json
import subprocess
import tempfile
from contextlib import contextmanager
from typing import IO, Iterator, List, Optional

from .exceptions import DiscoveryError, RepositoryError
from .models import UNKNOWN_FSTYPE
from .utils import CommandResult, NotificationManager, run_command


class DiskInspector:
    """Disk-level queries used while classifying pass-through devices."""

    def __init__(self, config, notifier: NotificationManager):
        self.config = config
        self.notifier = notifier
        self.timeout = config.command_timeout

    def list_partitions(self, device: str) -> List[str]:
        """Return the partition device paths of ``device``.

        Raises:
            DiscoveryError: lsblk failed or produced unreadable output
        """
        result = run_command(
            ["lsblk", "-J", "-p", "-o", "NAME,TYPE", device],
            timeout=self.timeout,
        )
        result.check(DiscoveryError, f"Failed to list partitions of {device}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"Unreadable lsblk output for {device}: {e}")

        partitions = []
        for entry in data.get("blockdevices", []) or []:
            partitions.extend(_collect_partitions(entry))
        return partitions

    def probe_filesystem(self, path: str) -> str:
        """Return the filesystem type of ``path``, or ``"unknown"``.

        Never raises: a failed probe or an empty answer both mean unknown.
        """
        result = run_command(["lsblk", "-n", "-d", "-o", "FSTYPE", path], timeout=self.timeout)
        if not result.ok:
            self.notifier.warning(f"Filesystem probe failed for {path}: {result.diagnostic}")
            return UNKNOWN_FSTYPE
        return _first_line(result.stdout) or UNKNOWN_FSTYPE

    def zero_free_space(self, partition: str) -> CommandResult:
        """Overwrite unused ext2/3/4 blocks with zeros so they dedupe and compress."""
        self.notifier.info(f"Zeroing free space on {partition}")
        return run_command(["zerofree", partition])

    @contextmanager
    def ntfs_clone_stream(self, partition: str) -> Iterator[IO[bytes]]:
        """Yield the stdout of ``ntfsclone --save-image`` for ``partition``.

        The image only contains used clusters. If the consumer fails the
        clone is terminated; otherwise a non-zero ntfsclone exit raises
        RepositoryError with its stderr, since an archive fed from a failed
        clone is not usable.
        """
        command = ["ntfsclone", "--save-image", "--output", "-", partition]
        self.notifier.debug(f"Running command: {' '.join(command)}")

        # stderr goes to a file so progress output can never fill a pipe
        with tempfile.TemporaryFile() as errors:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=errors)
            except FileNotFoundError:
                raise RepositoryError(f"Cannot clone {partition}", command=command,
                                      returncode=127, stderr="command not found: ntfsclone")
            except OSError as e:
                raise RepositoryError(f"Cannot clone {partition}", command=command,
                                      returncode=126, stderr=str(e))

            try:
                yield process.stdout
            except BaseException:
                process.terminate()
                process.wait()
                raise
            finally:
                process.stdout.close()

            returncode = process.wait()
            if returncode != 0:
                errors.seek(0)
                stderr = errors.read().decode("utf-8", errors="ignore")
                raise RepositoryError(f"ntfsclone failed for {partition}", command=command,
                                      returncode=returncode, stderr=stderr)


def _collect_partitions(entry: dict) -> List[str]:
    partitions = []
    for child in entry.get("children", []) or []:
        if child.get("type") == "part" and child.get("name"):
            partitions.append(child["name"])
        partitions.extend(_collect_partitions(child))
    return partitions


def _first_line(text: Optional[str]) -> str:
    lines = (text or "").strip().splitlines()
    return lines[0].strip() if lines else ""
