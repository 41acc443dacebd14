"""
Pytest configuration and shared fixtures for kvm-borg tests.

The hypervisor, disk tools and borg repository are replaced by in-memory
fakes that append every call to a shared ``events`` list, so tests can
assert on the exact order of side effects.
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from kvmborg.config import Config
from kvmborg.exceptions import (
    DiscoveryError,
    PowerTransitionError,
    RepositoryError,
    RepositoryInvalidError,
)
from kvmborg.lock import SingleInstanceLock
from kvmborg.models import ArchiveResult, PowerState, PruneResult
from kvmborg.utils import CommandResult, NotificationManager
from kvmborg.vm_manager import HypervisorPlatform, PowerController


# ==============================================================================
# Fakes
# ==============================================================================


class FakeHypervisor(HypervisorPlatform):
    """In-memory hypervisor. A shut down machine reports shut-off on the next poll."""

    def __init__(self, events: List[tuple]):
        self.events = events
        self.states: Dict[str, PowerState] = {}
        self.targets: Dict[str, List[Tuple[str, str]]] = {}
        self.broken_storage: set = set()
        self.broken_state: set = set()
        self.failing_start: set = set()
        self.failing_shutdown: set = set()
        self.list_error = False

    @property
    def platform_name(self) -> str:
        return "fake"

    def add(self, name: str, state: PowerState = PowerState.SHUT_OFF,
            targets: Optional[List[Tuple[str, str]]] = None) -> None:
        self.states[name] = state
        self.targets[name] = targets or []

    def list_machines(self) -> List[str]:
        self.events.append(("list",))
        if self.list_error:
            raise DiscoveryError("Failed to list VMs")
        return list(self.states)

    def machine_exists(self, name: str) -> bool:
        self.events.append(("exists", name))
        return name in self.states

    def domain_state(self, name: str) -> PowerState:
        self.events.append(("state", name))
        if name in self.broken_state:
            raise DiscoveryError(f"Failed to query state of VM '{name}'")
        return self.states[name]

    def shutdown(self, name: str) -> None:
        self.events.append(("shutdown", name))
        if name in self.failing_shutdown:
            raise PowerTransitionError(f"Failed to shut down VM '{name}'")
        self.states[name] = PowerState.SHUT_OFF

    def start(self, name: str) -> None:
        self.events.append(("start", name))
        if name in self.failing_start:
            raise PowerTransitionError(f"Failed to start VM '{name}'")
        self.states[name] = PowerState.RUNNING

    def export_config(self, name: str, destination: Path) -> Path:
        self.events.append(("export", name))
        xml_file = Path(destination) / f"{name}.xml"
        xml_file.write_text(f"<domain><name>{name}</name></domain>")
        return xml_file

    def block_targets(self, name: str) -> List[Tuple[str, str]]:
        self.events.append(("blklist", name))
        if name in self.broken_storage:
            raise DiscoveryError(f"Failed to list block devices of VM '{name}'")
        return list(self.targets[name])


class FakeDisks:
    """Stand-in for DiskInspector."""

    def __init__(self, events: List[tuple]):
        self.events = events
        self.partitions: Dict[str, List[str]] = {}
        self.fstypes: Dict[str, str] = {}
        self.zerofree_rc = 0

    def list_partitions(self, device: str) -> List[str]:
        self.events.append(("partitions", device))
        if device not in self.partitions:
            raise DiscoveryError(f"Failed to list partitions of {device}")
        return list(self.partitions[device])

    def probe_filesystem(self, path: str) -> str:
        return self.fstypes.get(path, "unknown")

    def zero_free_space(self, partition: str) -> CommandResult:
        self.events.append(("zerofree", partition))
        return CommandResult(["zerofree", partition], self.zerofree_rc,
                             stderr="" if self.zerofree_rc == 0 else "zerofree: bad superblock")

    def ntfs_clone_stream(self, partition: str):
        events = self.events

        class _Stream:
            def __enter__(self):
                events.append(("ntfsclone", partition))
                return b"ntfs-image"

            def __exit__(self, *exc_info):
                return False

        return _Stream()


class FakeRepository:
    """Stand-in for BorgRepository recording archives and prunes."""

    def __init__(self, events: List[tuple]):
        self.events = events
        self.valid = True
        self.failing_archives: set = set()
        self.failing_prunes: set = set()
        self.archives: List[Tuple[str, tuple]] = []

    def validate(self, repo: str) -> None:
        self.events.append(("validate", repo))
        if not self.valid:
            raise RepositoryInvalidError(f"The specified path is not a valid Borg repository: {repo}")

    def _create(self, name: str, sources: tuple, read_special: bool) -> ArchiveResult:
        kind = name.split("-")[1]
        self.events.append(("archive", name, read_special))
        if kind in self.failing_archives:
            raise RepositoryError(f"Failed to create archive {name}", stderr="Repository is locked")
        self.archives.append((name, tuple(sources)))
        return ArchiveResult(name=name)

    def archive(self, repo, name, sources, compression=None, read_special=False):
        return self._create(name, tuple(sources), read_special)

    def archive_stream(self, repo, name, stream, compression=None):
        return self._create(name, ("-",), False)

    def prune(self, repo, glob, policy):
        self.events.append(("prune", glob))
        if glob in self.failing_prunes:
            raise RepositoryError(f"Failed to prune archives matching {glob}")
        return PruneResult(glob=glob)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def config(tmp_path) -> Config:
    """Config isolated from the environment, with paths under tmp_path."""
    cfg = Config(environ={})
    cfg.set('backup.lock_file', str(tmp_path / "run" / "kvm-borg.lock"))
    cfg.set('backup.work_dir', str(tmp_path / "work"))
    cfg.set('notifications.console', False)
    cfg.set('power.poll_interval', 0)
    return cfg


@pytest.fixture
def notifier(config) -> NotificationManager:
    return NotificationManager(config)


@pytest.fixture
def events() -> List[tuple]:
    return []


@pytest.fixture
def hypervisor(events) -> FakeHypervisor:
    return FakeHypervisor(events)


@pytest.fixture
def disks(events) -> FakeDisks:
    return FakeDisks(events)


@pytest.fixture
def repository(events) -> FakeRepository:
    return FakeRepository(events)


@pytest.fixture
def lock(config, notifier) -> SingleInstanceLock:
    return SingleInstanceLock(config.lock_file, notifier)


@pytest.fixture
def power(hypervisor, config, notifier) -> PowerController:
    return PowerController(hypervisor, config, notifier, sleep=lambda seconds: None)


@pytest.fixture
def mock_run_command(mocker):
    """Factory patching ``run_command`` in the given kvmborg module."""

    def _patch(module: str, *results: CommandResult):
        target = mocker.patch(f"kvmborg.{module}.run_command")
        if len(results) == 1:
            target.return_value = results[0]
        elif results:
            target.side_effect = list(results)
        return target

    return _patch
