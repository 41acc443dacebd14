"""Hypervisor access and machine power control."""

import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .exceptions import DiscoveryError, PowerTransitionError
from .models import PowerState
from .utils import CommandResult, NotificationManager, run_command


class HypervisorPlatform(ABC):
    """Abstract base class for hypervisor implementations."""

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Return platform name."""
        pass

    @abstractmethod
    def list_machines(self) -> List[str]:
        """List every defined machine, running or not."""
        pass

    @abstractmethod
    def machine_exists(self, name: str) -> bool:
        """Check if the hypervisor knows a machine called ``name``."""
        pass

    @abstractmethod
    def domain_state(self, name: str) -> PowerState:
        """Return the current power state of a machine."""
        pass

    @abstractmethod
    def shutdown(self, name: str) -> None:
        """Request a graceful shutdown without waiting for it."""
        pass

    @abstractmethod
    def start(self, name: str) -> None:
        """Start a stopped machine."""
        pass

    @abstractmethod
    def export_config(self, name: str, destination: Path) -> Path:
        """Write the machine definition into ``destination`` and return the file."""
        pass

    @abstractmethod
    def block_targets(self, name: str) -> List[Tuple[str, str]]:
        """Return ``(target, source)`` pairs for the machine's block devices."""
        pass


class VirshPlatform(HypervisorPlatform):
    """libvirt/KVM access through the ``virsh`` command."""

    def __init__(self, config, notifier: NotificationManager):
        self.config = config
        self.notifier = notifier
        self.timeout = config.command_timeout

    @property
    def platform_name(self) -> str:
        """Return platform name."""
        return "libvirt"

    def _virsh(self, *args: str) -> CommandResult:
        """Run a virsh subcommand against the configured connection URI."""
        command = ["virsh"]
        if self.config.libvirt_uri:
            command += ["-c", self.config.libvirt_uri]
        command += list(args)
        return run_command(command, timeout=self.timeout)

    def list_machines(self) -> List[str]:
        """List every defined domain, running or not.

        Raises:
            DiscoveryError: virsh could not list domains
        """
        result = self._virsh("list", "--all", "--name")
        result.check(DiscoveryError, "Failed to list VMs")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def machine_exists(self, name: str) -> bool:
        """Check domain existence with ``virsh dominfo``."""
        return self._virsh("dominfo", name).ok

    def domain_state(self, name: str) -> PowerState:
        """Query ``virsh domstate``.

        Args:
            name: Domain name

        Returns:
            PowerState; states other than running and shut off map to OTHER

        Raises:
            DiscoveryError: the state query failed
        """
        result = self._virsh("domstate", name)
        result.check(DiscoveryError, f"Failed to query state of VM '{name}'")
        return PowerState.from_virsh(result.stdout)

    def shutdown(self, name: str) -> None:
        """Send an ACPI shutdown request; does not wait."""
        self._virsh("shutdown", name).check(PowerTransitionError, f"Failed to shut down VM '{name}'")

    def start(self, name: str) -> None:
        """Start the domain."""
        self._virsh("start", name).check(PowerTransitionError, f"Failed to start VM '{name}'")

    def export_config(self, name: str, destination: Path) -> Path:
        """Write ``virsh dumpxml`` output to ``{name}.xml``.

        Args:
            name: Domain name
            destination: Existing directory for the XML file

        Returns:
            Path of the written XML file
        """
        result = self._virsh("dumpxml", name)
        result.check(DiscoveryError, f"Failed to dump XML configuration of VM '{name}'")
        xml_file = Path(destination) / f"{name}.xml"
        xml_file.write_text(result.stdout)
        return xml_file

    def block_targets(self, name: str) -> List[Tuple[str, str]]:
        """Parse ``virsh domblklist`` into ``(target, source)`` pairs.

        Targets without a backing source (empty CD-ROM drives) are dropped.

        Raises:
            DiscoveryError: virsh could not list the block devices
        """
        result = self._virsh("domblklist", name)
        result.check(DiscoveryError, f"Failed to list block devices of VM '{name}'")

        targets = []
        # Skip the " Target  Source" header and the dashed rule
        for line in result.stdout.splitlines()[2:]:
            parts = line.strip().split(None, 1)
            if len(parts) != 2:
                continue
            target, source = parts[0], parts[1].strip()
            if not source or source == "-":
                continue
            targets.append((target, source))
        return targets


class PowerController:
    """Shut machines down for the backup window and bring them back."""

    def __init__(self, hypervisor: HypervisorPlatform, config, notifier: NotificationManager,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.hypervisor = hypervisor
        self.config = config
        self.notifier = notifier
        self._sleep = sleep
        self._clock = clock

    def state(self, name: str) -> PowerState:
        """Return the machine's current power state."""
        return self.hypervisor.domain_state(name)

    def shutdown(self, name: str) -> None:
        self.notifier.info(f"Shutting down VM: {name}")
        self.hypervisor.shutdown(name)

    def wait_until_off(self, name: str, poll_interval: Optional[float] = None) -> None:
        """Block until the machine reports ``shut-off``.

        Polls every ``poll_interval`` seconds. Without a configured
        ``power.shutdown_timeout`` this waits indefinitely; with one, a
        machine still up after the timeout raises PowerTransitionError.
        """
        interval = self.config.poll_interval if poll_interval is None else poll_interval
        timeout = self.config.shutdown_timeout
        started = self._clock()

        self.notifier.info(f"Waiting for VM to shut off: {name}")
        while self.state(name) is not PowerState.SHUT_OFF:
            if timeout is not None and self._clock() - started >= timeout:
                raise PowerTransitionError(
                    f"VM '{name}' did not shut off within {timeout:g}s"
                )
            self._sleep(interval)
        self.notifier.info(f"VM is shut off: {name}")

    def start(self, name: str) -> None:
        self.notifier.info(f"Starting VM: {name}")
        self.hypervisor.start(name)
