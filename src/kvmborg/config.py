"""Configuration management for kvm-borg."""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional

from .models import RetentionPolicy


DEFAULT_CONFIG = Path(__file__).parent / "default.yaml"


class Config:
    """Configuration for a kvm-borg run.

    Built once at startup and handed to every component; components never
    consult the environment themselves.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration.

        Args:
            config_path: Path to custom configuration file
            environ: Environment mapping used for overrides (defaults to os.environ)
        """
        self.config_path = config_path
        self._environ = os.environ if environ is None else environ
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file."""
        with open(DEFAULT_CONFIG, 'r') as f:
            config = yaml.safe_load(f)

        # Override with custom configuration if provided
        if self.config_path and os.path.exists(self.config_path):
            with open(self.config_path, 'r') as f:
                custom_config = yaml.safe_load(f) or {}
            config = _merge(config, custom_config)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        env_mappings = {
            'BORG_PASSPHRASE': ['repository', 'passphrase'],
            'KVMBORG_COMPRESSION': ['repository', 'compression'],
            'KVMBORG_LOCK_FILE': ['backup', 'lock_file'],
            'KVMBORG_WORK_DIR': ['backup', 'work_dir'],
            'KVMBORG_EXCLUDE_VMS': ['backup', 'exclude_vms'],
            'KVMBORG_KEEP_DAILY': ['retention', 'daily'],
            'KVMBORG_KEEP_WEEKLY': ['retention', 'weekly'],
            'KVMBORG_KEEP_MONTHLY': ['retention', 'monthly'],
            'KVMBORG_LOG_LEVEL': ['notifications', 'level'],
            'KVMBORG_LIBVIRT_URI': ['hypervisor', 'uri'],
        }

        for env_var, config_path in env_mappings.items():
            if env_var in self._environ:
                value = self._environ[env_var]
                # Convert to appropriate type
                if config_path[-1] in ['daily', 'weekly', 'monthly']:
                    value = int(value)
                elif config_path[-1] == 'exclude_vms':
                    value = [name.strip() for name in value.split(',') if name.strip()]

                current = config
                for key in config_path[:-1]:
                    if key not in current or current[key] is None:
                        current[key] = {}
                    current = current[key]
                current[config_path[-1]] = value

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., 'retention.daily')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        keys = key.split('.')
        current = self._config

        for k in keys[:-1]:
            if k not in current or current[k] is None:
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value

    def save(self, path: str) -> None:
        """Save current configuration to file, without the passphrase."""
        data = _merge({}, self._config)
        if data.get('repository'):
            data['repository'].pop('passphrase', None)
        with open(path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, indent=2)

    @property
    def borg_command(self) -> str:
        return self.get('repository.command', 'borg')

    @property
    def passphrase(self) -> Optional[str]:
        """Repository passphrase handed to borg, if configured."""
        return self.get('repository.passphrase')

    @property
    def compression(self) -> str:
        """Get borg compression method, e.g. ``zstd,5``."""
        return self.get('repository.compression', 'zstd,5')

    @property
    def encryption(self) -> str:
        """Get encryption method used by ``init``."""
        return self.get('repository.encryption', 'repokey-blake2')

    @property
    def retention_policy(self) -> RetentionPolicy:
        """Get the keep-daily/weekly/monthly policy."""
        return RetentionPolicy(
            keep_daily=int(self.get('retention.daily', 7)),
            keep_weekly=int(self.get('retention.weekly', 4)),
            keep_monthly=int(self.get('retention.monthly', 6)),
        )

    @property
    def exclude_vms(self) -> List[str]:
        """Get list of machine names that are never backed up."""
        return list(self.get('backup.exclude_vms') or [])

    @property
    def lock_file(self) -> str:
        return self.get('backup.lock_file', '/var/run/backup_vms.lock')

    @property
    def work_dir(self) -> str:
        """Directory holding exported machine definitions during a backup."""
        return self.get('backup.work_dir', '/tmp/kvm_backup')

    @property
    def strict_exit(self) -> bool:
        return bool(self.get('backup.strict_exit', False))

    @property
    def libvirt_uri(self) -> Optional[str]:
        return self.get('hypervisor.uri')

    @property
    def command_timeout(self) -> Optional[int]:
        """Timeout for short hypervisor and disk queries."""
        return self.get('hypervisor.command_timeout', 300)

    @property
    def poll_interval(self) -> float:
        return float(self.get('power.poll_interval', 5))

    @property
    def shutdown_timeout(self) -> Optional[float]:
        """Seconds to wait for shut-off, or None to wait indefinitely."""
        value = self.get('power.shutdown_timeout')
        return None if value is None else float(value)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif isinstance(value, dict):
            merged[key] = _merge({}, value)
        else:
            merged[key] = value
    return merged
