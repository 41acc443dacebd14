"""Tests for the backup orchestrator."""

import os
import signal
from datetime import datetime

import pytest

from kvmborg.backup_engine import BackupOrchestrator
from kvmborg.exceptions import (
    DiscoveryError,
    LockHeldError,
    PreconditionError,
    RepositoryInvalidError,
    UnknownMachineError,
)
from kvmborg.models import PowerState
from kvmborg.strategy import ArchiveNamer
from kvmborg.vm_manager import PowerController


FROZEN = datetime(2026, 10, 19, 2, 30, 0)


@pytest.fixture
def orchestrator(config, notifier, hypervisor, repository, disks, power, lock):
    return BackupOrchestrator(
        config,
        notifier,
        hypervisor=hypervisor,
        repository=repository,
        disks=disks,
        power=power,
        lock=lock,
        namer=ArchiveNamer(clock=lambda: FROZEN),
    )


@pytest.fixture
def db1(hypervisor, disks):
    """Running machine with one image file and an ext4 partition on /dev/sdb."""
    hypervisor.add("db1", PowerState.RUNNING, [
        ("vda", "/var/lib/libvirt/images/db1.qcow2"),
        ("sda", "/dev/sdb"),
    ])
    disks.partitions["/dev/sdb"] = ["/dev/sdb1"]
    disks.fstypes["/dev/sdb1"] = "ext4"


def side_effects(events):
    """Events that change machines, disks or the repository."""
    keep = {"shutdown", "export", "zerofree", "ntfsclone", "archive", "prune", "start"}
    return [event for event in events if event[0] in keep]


class TestDb1Scenario:
    """Running machine with an image file and an ext4 pass-through partition."""

    def test_call_sequence(self, orchestrator, events, db1):
        orchestrator.run("/backup/repo", "db1")

        assert side_effects(events) == [
            ("shutdown", "db1"),
            ("export", "db1"),
            ("zerofree", "/dev/sdb1"),
            ("archive", "db1-vm-bundle-20261019_023000", False),
            ("archive", "db1-partition-sdb1-20261019_023001", True),
            ("prune", "db1-vm-bundle-*"),
            ("prune", "db1-partition-sdb1-*"),
            ("start", "db1"),
        ]

    def test_waits_for_shut_off_before_export(self, orchestrator, events, db1):
        orchestrator.run("/backup/repo", "db1")

        shutdown = events.index(("shutdown", "db1"))
        export = events.index(("export", "db1"))
        assert ("state", "db1") in events[shutdown:export]

    def test_bundle_holds_xml_and_image(self, orchestrator, repository, db1):
        orchestrator.run("/backup/repo", "db1")

        name, sources = repository.archives[0]
        assert name.startswith("db1-vm-bundle-")
        assert sources[0].endswith("db1.xml")
        assert sources[1:] == ("/var/lib/libvirt/images/db1.qcow2",)
        assert repository.archives[1][1] == ("/dev/sdb1",)

    def test_prune_globs_stay_within_machine(self, orchestrator, events, db1):
        orchestrator.run("/backup/repo", "db1")

        globs = [event[1] for event in events if event[0] == "prune"]
        assert globs and all(glob.startswith("db1-") for glob in globs)

    def test_report(self, orchestrator, hypervisor, db1):
        summary = orchestrator.run("/backup/repo", "db1")

        report = summary.reports[0]
        assert report.ok
        assert report.was_running
        assert report.restarted
        assert len(report.archived) == 2
        assert hypervisor.states["db1"] is PowerState.RUNNING

    def test_work_dir_removed(self, orchestrator, config, db1):
        orchestrator.run("/backup/repo", "db1")

        assert os.listdir(config.work_dir) == []

    def test_lock_released(self, orchestrator, config, db1):
        orchestrator.run("/backup/repo", "db1")

        assert not os.path.exists(config.lock_file)


class TestPreconditions:
    """Fatal checks that abort before any machine is touched."""

    def test_invalid_repository(self, orchestrator, repository, events, config, db1):
        repository.valid = False

        with pytest.raises(RepositoryInvalidError):
            orchestrator.run("/not/a/repo")

        assert events == [("validate", "/not/a/repo")]
        assert not os.path.exists(config.lock_file)

    def test_unknown_named_machine(self, orchestrator, events, config, mocker, db1):
        acquire = mocker.spy(orchestrator.lock, "acquire")

        with pytest.raises(UnknownMachineError):
            orchestrator.run("/backup/repo", "ghost")

        acquire.assert_not_called()
        assert side_effects(events) == []
        assert not os.path.exists(config.lock_file)

    def test_lock_held_by_live_process(self, orchestrator, events, config, db1):
        os.makedirs(os.path.dirname(config.lock_file))
        with open(config.lock_file, "w") as f:
            f.write(f"{os.getppid()}\n")

        with pytest.raises(LockHeldError):
            orchestrator.run("/backup/repo", "db1")

        assert side_effects(events) == []
        assert ("state", "db1") not in events
        # The other instance's lock is left alone
        assert os.path.exists(config.lock_file)

    def test_machine_list_unavailable(self, orchestrator, hypervisor, config):
        hypervisor.list_error = True

        with pytest.raises(PreconditionError):
            orchestrator.run("/backup/repo")

        assert not os.path.exists(config.lock_file)


class TestTargets:
    """Target resolution and exclusion."""

    def test_all_machines_in_enumeration_order(self, orchestrator, hypervisor, events):
        for name in ("alpha", "beta", "gamma"):
            hypervisor.add(name, PowerState.SHUT_OFF, [("vda", f"/images/{name}.qcow2")])

        summary = orchestrator.run("/backup/repo")

        assert [r.name for r in summary.reports] == ["alpha", "beta", "gamma"]
        exports = [event[1] for event in events if event[0] == "export"]
        assert exports == ["alpha", "beta", "gamma"]

    def test_excluded_machines_never_backed_up(self, orchestrator, hypervisor, events, config):
        for name in ("alpha", "backup", "gamma"):
            hypervisor.add(name, PowerState.RUNNING, [("vda", f"/images/{name}.qcow2")])
        config.set("backup.exclude_vms", ["backup"])

        summary = orchestrator.run("/backup/repo")

        touched = {event[1] for event in side_effects(events) if event[0] in ("shutdown", "export", "start")}
        assert touched == {"alpha", "gamma"}
        assert [r.skipped for r in summary.reports] == [None, "excluded", None]

    def test_each_machine_backed_up_once(self, orchestrator, hypervisor, events):
        for name in ("alpha", "beta"):
            hypervisor.add(name, PowerState.SHUT_OFF)

        orchestrator.run("/backup/repo")

        exports = [event[1] for event in events if event[0] == "export"]
        assert sorted(exports) == ["alpha", "beta"]

    def test_stopped_machine_not_started(self, orchestrator, hypervisor, events):
        hypervisor.add("cold", PowerState.SHUT_OFF, [("vda", "/images/cold.qcow2")])

        summary = orchestrator.run("/backup/repo", "cold")

        assert ("shutdown", "cold") not in events
        assert ("start", "cold") not in events
        assert summary.reports[0].ok
        assert hypervisor.states["cold"] is PowerState.SHUT_OFF


class TestFailureContainment:
    """Errors stay scoped to the item or machine they hit."""

    def test_archive_failure_continues_and_restarts(self, orchestrator, repository, events, hypervisor, db1):
        repository.failing_archives.add("vm")

        summary = orchestrator.run("/backup/repo", "db1")

        report = summary.reports[0]
        assert not report.ok
        assert len(report.failed) == 1
        assert report.archived == ["db1-partition-sdb1-20261019_023001"]
        assert ("start", "db1") in events
        assert hypervisor.states["db1"] is PowerState.RUNNING

    def test_prune_failure_is_not_fatal(self, orchestrator, repository, events, db1):
        repository.failing_prunes.add("db1-vm-bundle-*")

        summary = orchestrator.run("/backup/repo", "db1")

        assert summary.ok
        assert ("prune", "db1-partition-sdb1-*") in events
        assert ("start", "db1") in events

    def test_discovery_failure_skips_only_that_machine(self, orchestrator, hypervisor, events):
        hypervisor.add("broken", PowerState.RUNNING, [("vda", "/images/broken.qcow2")])
        hypervisor.add("fine", PowerState.SHUT_OFF, [("vda", "/images/fine.qcow2")])
        hypervisor.broken_storage.add("broken")

        summary = orchestrator.run("/backup/repo")

        broken, fine = summary.reports
        assert broken.errors and not broken.archived
        assert ("start", "broken") in events
        assert fine.ok and fine.archived

    def test_state_query_failure_leaves_machine_alone(self, orchestrator, hypervisor, events):
        hypervisor.add("mystery", PowerState.RUNNING)
        hypervisor.broken_state.add("mystery")

        summary = orchestrator.run("/backup/repo", "mystery")

        assert summary.reports[0].errors
        assert side_effects(events) == []

    def test_failed_shutdown_does_not_archive_live_disks(self, orchestrator, hypervisor, events, db1):
        hypervisor.failing_shutdown.add("db1")

        summary = orchestrator.run("/backup/repo", "db1")

        assert summary.reports[0].errors
        assert not [event for event in events if event[0] == "archive"]
        # Still running, so no start is issued
        assert ("start", "db1") not in events

    def test_failed_start_is_reported(self, orchestrator, hypervisor, db1):
        hypervisor.failing_start.add("db1")

        summary = orchestrator.run("/backup/repo", "db1")

        report = summary.reports[0]
        assert not report.restarted
        assert any("restart" in error for error in report.errors)

    def test_shutdown_timeout_is_fatal_for_machine(self, config, notifier, hypervisor, repository,
                                                   disks, lock, events, db1):
        ticks = iter(range(0, 1000, 10))
        power = PowerController(hypervisor, config, notifier, sleep=lambda s: None,
                                clock=lambda: next(ticks))
        config.set("power.shutdown_timeout", 30)
        hypervisor.shutdown = lambda name: events.append(("shutdown", name))
        orchestrator = BackupOrchestrator(config, notifier, hypervisor=hypervisor, repository=repository,
                                          disks=disks, power=power, lock=lock)

        summary = orchestrator.run("/backup/repo", "db1")

        assert any("did not shut off" in error for error in summary.reports[0].errors)
        assert not [event for event in events if event[0] == "archive"]

    def test_export_os_error_skips_only_that_machine(self, orchestrator, hypervisor, repository, caplog):
        hypervisor.add("a", PowerState.SHUT_OFF, [("vda", "/images/a.qcow2")])
        hypervisor.add("b", PowerState.SHUT_OFF, [("vda", "/images/b.qcow2")])
        export = hypervisor.export_config

        def full_disk_export(name, destination):
            if name == "a":
                raise OSError(28, "No space left on device")
            return export(name, destination)

        hypervisor.export_config = full_disk_export

        summary = orchestrator.run("/backup/repo")

        a, b = summary.reports
        assert any("No space left on device" in error for error in a.errors)
        assert not a.archived
        assert b.ok and b.archived
        assert [name for name, _ in repository.archives] == b.archived
        assert "Backup process completed: 2 VM(s) processed, 1 ok, 1 with errors" in caplog.text

    def test_unwritable_work_dir_is_a_machine_error(self, orchestrator, hypervisor, config, tmp_path, events):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config.set("backup.work_dir", str(blocker / "work"))
        hypervisor.add("db1", PowerState.RUNNING, [("vda", "/images/db1.qcow2")])

        summary = orchestrator.run("/backup/repo", "db1")

        assert any("work directory" in error for error in summary.reports[0].errors)
        assert ("start", "db1") in events

    def test_restart_attempted_when_state_query_fails(self, orchestrator, hypervisor, events, mocker, db1):
        mocker.patch.object(hypervisor, "domain_state", side_effect=[
            PowerState.RUNNING,
            PowerState.SHUT_OFF,
            DiscoveryError("Failed to query state of VM 'db1'", stderr="failed to connect to the hypervisor"),
        ])

        summary = orchestrator.run("/backup/repo", "db1")

        assert side_effects(events)[-1] == ("start", "db1")
        assert summary.reports[0].restarted
        assert summary.reports[0].ok


class TestArchiveNames:
    """Archive naming across a run."""

    def test_names_unique_within_same_second(self, orchestrator, hypervisor, disks, repository):
        hypervisor.add("db1", PowerState.SHUT_OFF, [("sda", "/dev/sdb")])
        disks.partitions["/dev/sdb"] = ["/dev/sdb1", "/dev/sdb2", "/dev/sdb3"]

        orchestrator.run("/backup/repo", "db1")

        names = [name for name, _ in repository.archives]
        assert len(names) == 4
        assert len(set(names)) == 4

    def test_second_run_creates_distinct_archive_set(self, orchestrator, repository, db1):
        orchestrator.run("/backup/repo", "db1")
        orchestrator.run("/backup/repo", "db1")

        names = [name for name, _ in repository.archives]
        assert len(names) == 4
        assert len(set(names)) == 4


class TestInterrupt:
    """Lock cleanup on termination signals."""

    def test_sigterm_mid_run_releases_lock(self, orchestrator, hypervisor, config, db1):
        def interrupted_export(name, destination):
            os.kill(os.getpid(), signal.SIGTERM)
            raise AssertionError("signal handler did not fire")

        hypervisor.export_config = interrupted_export

        with pytest.raises(SystemExit) as excinfo:
            orchestrator.run("/backup/repo", "db1")

        assert excinfo.value.code == 128 + signal.SIGTERM
        assert not os.path.exists(config.lock_file)
        # Machine was restarted on the way out
        assert hypervisor.states["db1"] is PowerState.RUNNING
