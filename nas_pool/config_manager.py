"""Runtime settings for storage pool management."""

import os
import json
import re
import logging
from typing import Dict, Any, Optional
from pathlib import Path
from dataclasses import dataclass, asdict, fields


logger = logging.getLogger(__name__)


@dataclass
class StorageSettings:
    """Paths, timeouts and policy knobs used by the storage core."""
    snapraid_config_path: str = "/etc/snapraid.conf"
    fstab_path: str = "/etc/fstab"
    samba_config_path: str = "/etc/samba/smb.conf"
    pool_mount_point: str = "/mnt/storage"
    mount_base: str = "/mnt/disks"
    parity_mount_prefix: str = "/mnt/parity"
    nonraid_mount_prefix: str = "/mnt/disk"
    nonraid_dat_path: str = "/nonraid.dat"
    data_file_path: str = "/var/lib/nas-pool/data.json"
    backend_config_path: str = "/etc/nas-pool/storage-backend.conf"
    sync_log_path: str = "/var/log/snapraid-sync.log"
    audit_log_path: str = "/var/log/nas-pool/audit.log"
    log_level: str = "INFO"
    command_timeout: int = 300
    scrub_timeout: int = 7200
    scrub_percentage: int = 10
    partprobe_settle_seconds: float = 2.0
    share_group: str = "sambashare"
    dry_run: bool = False


PATH_FIELDS = (
    'snapraid_config_path', 'fstab_path', 'samba_config_path', 'pool_mount_point',
    'mount_base', 'parity_mount_prefix', 'nonraid_mount_prefix', 'nonraid_dat_path',
    'data_file_path', 'backend_config_path', 'sync_log_path', 'audit_log_path'
)

# Passed to mkdir, mount and mergerfs as command arguments
MOUNT_PATH_FIELDS = ('pool_mount_point', 'mount_base', 'parity_mount_prefix', 'nonraid_mount_prefix')
MOUNT_PATH_PATTERN = re.compile(r'^/[A-Za-z0-9_./-]*$')


class ConfigManager:
    """Loads, validates and caches StorageSettings."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'SNAPRAID_CONFIG_PATH': 'snapraid_config_path',
        'FSTAB_PATH': 'fstab_path',
        'SAMBA_CONFIG_PATH': 'samba_config_path',
        'POOL_MOUNT_POINT': 'pool_mount_point',
        'STORAGE_MOUNT_BASE': 'mount_base',
        'PARITY_MOUNT_PREFIX': 'parity_mount_prefix',
        'NONRAID_MOUNT_PREFIX': 'nonraid_mount_prefix',
        'NONRAID_DAT_PATH': 'nonraid_dat_path',
        'NAS_POOL_DATA_FILE': 'data_file_path',
        'STORAGE_BACKEND_CONFIG': 'backend_config_path',
        'SNAPRAID_SYNC_LOG': 'sync_log_path',
        'NAS_POOL_AUDIT_LOG': 'audit_log_path',
        'LOG_LEVEL': 'log_level',
        'MAX_COMMAND_TIMEOUT': 'command_timeout',
        'SCRUB_TIMEOUT': 'scrub_timeout',
        'SCRUB_PERCENTAGE': 'scrub_percentage',
        'PARTPROBE_SETTLE_SECONDS': 'partprobe_settle_seconds',
        'SHARE_GROUP': 'share_group',
        'NAS_POOL_DRY_RUN': 'dry_run'
    }

    INT_FIELDS = {'command_timeout', 'scrub_timeout', 'scrub_percentage'}

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to a JSON or key=value settings file
        """
        self.config_file_path = config_file_path
        self._settings: Optional[StorageSettings] = None

    def load_config(self) -> StorageSettings:
        """
        Load settings from defaults, the settings file and the environment.

        Returns:
            Validated StorageSettings, cached after the first load
        """
        if self._settings is not None:
            return self._settings

        config_dict = asdict(StorageSettings())

        if self.config_file_path and os.path.exists(self.config_file_path):
            config_dict.update(self._load_config_file(self.config_file_path))

        config_dict.update(self._load_from_environment())

        known = {f.name for f in fields(StorageSettings)}
        settings = StorageSettings(**{k: v for k, v in config_dict.items() if k in known})
        self._validate_config(settings)

        self._settings = settings
        logger.info("Storage settings loaded")
        return settings

    def reload_config(self) -> StorageSettings:
        """Force a reload from all sources."""
        self._settings = None
        return self.load_config()

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        try:
            if Path(file_path).suffix.lower() == '.json':
                with open(file_path, 'r') as f:
                    return json.load(f)
            return self._load_env_file(file_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading settings file {file_path}: {e}")
            return {}

    def _load_env_file(self, file_path: str) -> Dict[str, Any]:
        config = {}
        with open(file_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                key = key.strip()
                if key in self.ENV_MAPPINGS:
                    field_name = self.ENV_MAPPINGS[key]
                    config[field_name] = self._parse_value(field_name, value.strip().strip('"\''))
        return config

    def _load_from_environment(self) -> Dict[str, Any]:
        config = {}
        for env_key, field_name in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[field_name] = self._parse_value(field_name, env_value)
        return config

    def _parse_value(self, field_name: str, value: str) -> Any:
        """
        Parse a string setting into the field's type.

        Args:
            field_name: StorageSettings field name
            value: Raw string value

        Returns:
            Parsed value, or the field default when the value is malformed
        """
        if field_name == 'dry_run':
            return value.lower() in {'true', '1', 'yes', 'on'}

        if field_name in self.INT_FIELDS:
            try:
                return int(value)
            except ValueError:
                logger.warning(f"Invalid integer for {field_name}, using default")
                return getattr(StorageSettings(), field_name)

        if field_name == 'partprobe_settle_seconds':
            try:
                return float(value)
            except ValueError:
                logger.warning(f"Invalid number for {field_name}, using default")
                return StorageSettings().partprobe_settle_seconds

        return value

    def _validate_config(self, settings: StorageSettings) -> None:
        """
        Validate settings values.

        Raises:
            ValueError: If a setting is invalid
        """
        if settings.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")

        if settings.scrub_timeout <= 0:
            raise ValueError("scrub_timeout must be positive")

        if not 1 <= settings.scrub_percentage <= 100:
            raise ValueError("scrub_percentage must be between 1 and 100")

        if settings.partprobe_settle_seconds < 0:
            raise ValueError("partprobe_settle_seconds must not be negative")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if settings.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log level: {settings.log_level}")

        for name in PATH_FIELDS:
            path = getattr(settings, name)
            if path and not os.path.isabs(path):
                raise ValueError(f"Path must be absolute: {path}")

        for name in MOUNT_PATH_FIELDS:
            path = getattr(settings, name)
            if not MOUNT_PATH_PATTERN.match(path) or '..' in path:
                raise ValueError(f"Unsupported characters in {name}: {path}")

        logger.debug("Settings validation passed")
