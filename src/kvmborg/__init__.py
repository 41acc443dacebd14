"""
kvm-borg - Borg backups for KVM virtual machines

Shuts machines down for the backup window, archives their libvirt definition,
disk images, pass-through block devices and partitions into a borg repository,
prunes old archives and starts the machines again.
"""

__version__ = "0.1.0"
__author__ = "Entro01"

from .backup_engine import BackupOrchestrator
from .config import Config
from .lock import SingleInstanceLock
from .repository import BorgRepository
from .storage_manager import StorageClassifier
from .vm_manager import PowerController, VirshPlatform

__all__ = [
    "BackupOrchestrator",
    "BorgRepository",
    "Config",
    "PowerController",
    "SingleInstanceLock",
    "StorageClassifier",
    "VirshPlatform",
]
