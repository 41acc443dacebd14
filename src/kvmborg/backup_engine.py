"""Backup orchestration: one pass over the target machines."""

import shutil
import tempfile
from typing import List, Optional

from .disk_tools import DiskInspector
from .exceptions import (
    DiscoveryError,
    KvmBorgError,
    PowerTransitionError,
    PreconditionError,
    RepositoryError,
    UnknownMachineError,
)
from .lock import SingleInstanceLock
from .models import ArchiveJob, Machine, MachineReport, PowerState, RunSummary
from .repository import BorgRepository
from .storage_manager import StorageClassifier
from .strategy import ArchiveNamer, ArchivePlanner, StrategyRunner
from .utils import NotificationManager, ensure_directory
from .vm_manager import HypervisorPlatform, PowerController, VirshPlatform


class BackupOrchestrator:
    """Drive every target machine through shutdown, archive, prune and restart.

    Machines are handled strictly one after another, as are the storage
    items of a machine. Failures are contained to the smallest unit they
    affect: a failed archive or prune is recorded and the next item runs; a
    failed discovery or power transition ends that machine only. Only
    precondition failures abort the run.
    """

    def __init__(self, config, notification_manager: Optional[NotificationManager] = None,
                 hypervisor: Optional[HypervisorPlatform] = None,
                 repository: Optional[BorgRepository] = None,
                 disks: Optional[DiskInspector] = None,
                 power: Optional[PowerController] = None,
                 lock: Optional[SingleInstanceLock] = None,
                 namer: Optional[ArchiveNamer] = None):
        """Initialize the orchestrator.

        Args:
            config: Configuration object
            notification_manager: Notification manager instance
            hypervisor, repository, disks, power, lock, namer: collaborators;
                built from ``config`` when omitted
        """
        self.config = config
        self.notifier = notification_manager or NotificationManager(config)
        self.hypervisor = hypervisor or VirshPlatform(config, self.notifier)
        self.repository = repository or BorgRepository(config, self.notifier)
        self.disks = disks or DiskInspector(config, self.notifier)
        self.power = power or PowerController(self.hypervisor, config, self.notifier)
        self.lock = lock or SingleInstanceLock(config.lock_file, self.notifier)

        self.classifier = StorageClassifier(self.hypervisor, self.disks, self.notifier)
        self.planner = ArchivePlanner(namer or ArchiveNamer())
        self.runner = StrategyRunner(self.repository, self.disks, self.notifier,
                                     compression=config.compression)

    def run(self, repo: str, machine: Optional[str] = None) -> RunSummary:
        """Back up ``machine``, or every machine the hypervisor knows.

        Raises:
            PreconditionError: invalid repository, unknown machine, lock held
                or machine list unavailable; no machine has been touched
        """
        self.repository.validate(repo)

        if machine is not None and not self.hypervisor.machine_exists(machine):
            raise UnknownMachineError(machine)

        summary = RunSummary()
        with self.lock:
            for name in self.resolve_targets(machine):
                if name in self.config.exclude_vms:
                    self.notifier.info(f"Skipping excluded VM: {name}")
                    summary.reports.append(MachineReport(name=name, skipped="excluded"))
                    continue
                summary.reports.append(self.backup_machine(repo, name))

        if summary.ok:
            self.notifier.success(summary.summary_line())
        else:
            self.notifier.failure(summary.summary_line())
        return summary

    def resolve_targets(self, machine: Optional[str] = None) -> List[str]:
        """Return the machines of this run, in hypervisor enumeration order."""
        if machine is not None:
            return [machine]
        try:
            machines = self.hypervisor.list_machines()
        except DiscoveryError as e:
            raise PreconditionError(f"Cannot enumerate VMs: {e}")
        self.notifier.info(f"Found {len(machines)} VMs: {', '.join(machines)}")
        return machines

    def backup_machine(self, repo: str, name: str) -> MachineReport:
        """Run the full lifecycle of one machine and report what happened.

        A machine that was running is started again even when its backup
        failed part way through.
        """
        report = MachineReport(name=name)
        self.notifier.info(f"Backing up VM: {name}")

        try:
            state = self.power.state(name)
        except DiscoveryError as e:
            self._record_error(report, e)
            return report

        machine = Machine(name=name, state=state)
        report.was_running = state is PowerState.RUNNING
        try:
            if report.was_running:
                self.power.shutdown(name)
                self.power.wait_until_off(name)
            self._backup_storage(repo, machine, report)
        except (DiscoveryError, PowerTransitionError) as e:
            self._record_error(report, e)
        finally:
            if report.was_running:
                self._restore_power(name, report)

        if report.ok:
            self.notifier.success(f"Backup of VM {name} completed ({len(report.archived)} archives)")
        else:
            self.notifier.failure(f"Backup of VM {name} finished with errors")
        return report

    def _backup_storage(self, repo: str, machine: Machine, report: MachineReport) -> None:
        name = machine.name
        machine.storage = self.classifier.classify(name)

        try:
            ensure_directory(self.config.work_dir)
            work_dir = tempfile.mkdtemp(prefix=f"{name}-", dir=self.config.work_dir)
        except OSError as e:
            raise DiscoveryError(f"Cannot create work directory under {self.config.work_dir}: {e}")
        try:
            self.notifier.info(f"Dumping XML configuration for VM: {name}")
            try:
                config_document = self.hypervisor.export_config(name, work_dir)
            except OSError as e:
                raise DiscoveryError(f"Failed to export configuration of VM '{name}': {e}")

            jobs = self.planner.plan(name, machine.storage, config_document)
            for job in jobs:
                self.runner.prepare(job)
            for job in jobs:
                self._archive(repo, job, report)
            self._prune(repo, jobs)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _archive(self, repo: str, job: ArchiveJob, report: MachineReport) -> None:
        try:
            self.runner.execute(repo, job)
        except RepositoryError as e:
            self.notifier.error(f"Archive {job.name} failed: {e}")
            report.failed.append(f"{job.name}: {e}")
            return
        report.archived.append(job.name)

    def _prune(self, repo: str, jobs: List[ArchiveJob]) -> None:
        policy = self.config.retention_policy
        globs = []
        for job in jobs:
            if job.glob not in globs:
                globs.append(job.glob)

        for glob in globs:
            try:
                result = self.repository.prune(repo, glob, policy)
            except RepositoryError as e:
                self.notifier.warning(f"Prune of {glob} failed: {e}")
                continue
            if result.pruned:
                self.notifier.info(f"Pruned {len(result.pruned)} archives matching {glob}")

    def _restore_power(self, name: str, report: MachineReport) -> None:
        try:
            running = self.power.state(name) is PowerState.RUNNING
        except KvmBorgError as e:
            # State unknown, so attempt the start anyway
            self.notifier.warning(f"Cannot query state of VM {name} before restart: {e}")
            running = False
        if running:
            self.notifier.info(f"VM already running, not starting: {name}")
            return

        try:
            self.power.start(name)
            report.restarted = True
        except KvmBorgError as e:
            self.notifier.error(f"Failed to restart VM {name}: {e}")
            report.errors.append(f"restart: {e}")

    def _record_error(self, report: MachineReport, error: KvmBorgError) -> None:
        self.notifier.error(f"VM {report.name}: {error}")
        report.errors.append(str(error))
