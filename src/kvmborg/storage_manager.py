"""Classification of a machine's attached storage."""

from typing import List, Optional

from .disk_tools import DiskInspector
from .exceptions import DiscoveryError
from .models import StorageCategory, StorageItem
from .utils import NotificationManager
from .vm_manager import HypervisorPlatform


DEVICE_NAMESPACE = "/dev/"


class StorageClassifier:
    """Sort a machine's storage into image files, whole disks and partitions."""

    def __init__(self, hypervisor: HypervisorPlatform, disks: DiskInspector,
                 notifier: NotificationManager):
        self.hypervisor = hypervisor
        self.disks = disks
        self.notifier = notifier

    def classify(self, machine: str) -> List[StorageItem]:
        """Classify every block target of ``machine`` that has a backing source.

        Image files come first, in target order, followed by the partitions
        of each pass-through device (or the device itself when it carries no
        partition table).

        Args:
            machine: Machine name

        Returns:
            Ordered list of storage items

        Raises:
            DiscoveryError: the hypervisor could not list the machine's storage
        """
        targets = self.hypervisor.block_targets(machine)

        files: List[StorageItem] = []
        devices: List[str] = []
        for target, source in targets:
            if source.startswith(DEVICE_NAMESPACE):
                self.notifier.info(f"Block device ({target}): {source}")
                devices.append(source)
            else:
                self.notifier.info(f"Disk ({target}): {source}")
                files.append(StorageItem(source, StorageCategory.VIRTUAL_DISK_FILE))

        items = list(files)
        for device in devices:
            items.extend(self._classify_device(device))
        return items

    def _classify_device(self, device: str) -> List[StorageItem]:
        partitions = self._partitions(device)

        if not partitions:
            fstype = self.disks.probe_filesystem(device)
            self.notifier.info(f"No partitions found, backing up whole disk: {device} (FS type: {fstype})")
            return [StorageItem(device, StorageCategory.BLOCK_DEVICE, fstype=fstype)]

        items = []
        for partition in partitions:
            fstype = self.disks.probe_filesystem(partition)
            self.notifier.info(f"Partition: {partition} on {device} (FS type: {fstype})")
            items.append(StorageItem(partition, StorageCategory.PARTITION, fstype=fstype, parent=device))
        return items

    def _partitions(self, device: str) -> Optional[List[str]]:
        try:
            return self.disks.list_partitions(device)
        except DiscoveryError as e:
            self.notifier.warning(f"Could not read partition table of {device}, treating as whole disk: {e}")
            return None
