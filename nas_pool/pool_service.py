"""End-to-end storage pool configuration and status."""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

import psutil

from .audit import AuditLog
from .backend import BackendSelector
from .config_generator import (
    build_assignment, generate_fstab_block, generate_pool_plan, union_mount_options
)
from .config_manager import StorageSettings
from .errors import ConfigurationError, ConflictError
from .models import (
    DiskSpec, OperationKind, OperationStatus, PoolConfiguration, StorageBackend
)
from .mount_manager import PoolMountManager
from .nonraid_manager import NonRAIDManager
from .preparation import DiskPreparationExecutor, ErrorPolicy
from .snapraid_manager import SnapRAIDManager
from .state_store import StateStore
from .supervisor import OperationSupervisor
from .system_executor import SystemCommandExecutor
from .validator import validate_disk_plan, validate_storage_config


logger = logging.getLogger(__name__)

LAST_SYNC_PATTERN = re.compile(r"SnapRAID Sync Finished: (.+?)=")
SYNC_LOG_TAIL_LINES = 20


@dataclass
class PoolConfigureResult:
    """Outcome of a successful pool configuration request."""
    results: List[str]
    pool_mount: str
    disks: List[DiskSpec] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sync: Optional[OperationStatus] = None
    message: str = "Storage pool configured successfully"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "results": list(self.results),
            "warnings": list(self.warnings),
            "pool_mount": self.pool_mount,
            "disks": [disk.to_dict() for disk in self.disks],
            "sync": self.sync.to_dict() if self.sync else None,
        }


@dataclass
class PoolStatus:
    """Parity pool health derived from config, mounts and the sync log."""
    configured: bool
    running: bool
    pool_mount: str
    total_bytes: int = 0
    used_bytes: int = 0
    free_bytes: int = 0
    last_sync: Optional[str] = None
    pool_configured: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "running": self.running,
            "pool_mount": self.pool_mount,
            "pool_size": self.total_bytes,
            "pool_used": self.used_bytes,
            "pool_free": self.free_bytes,
            "last_sync": self.last_sync,
            "pool_configured": self.pool_configured,
        }


class PoolService:
    """
    Entry point for storage pool operations.

    Wires one command executor, supervisor and set of managers together
    from StorageSettings. Any collaborator can be passed in to replace the
    default built from settings.
    """

    def __init__(self,
                 settings: StorageSettings,
                 executor: Optional[SystemCommandExecutor] = None,
                 supervisor: Optional[OperationSupervisor] = None,
                 backend_selector: Optional[BackendSelector] = None,
                 state_store: Optional[StateStore] = None,
                 audit: Optional[AuditLog] = None,
                 preparer: Optional[DiskPreparationExecutor] = None,
                 mount_manager: Optional[PoolMountManager] = None):
        self.settings = settings
        self.executor = executor or SystemCommandExecutor(
            dry_run=settings.dry_run, timeout=settings.command_timeout
        )
        self.supervisor = supervisor or OperationSupervisor(self.executor)
        self.backend_selector = backend_selector or BackendSelector(settings.backend_config_path)
        self.state_store = state_store or StateStore(settings.data_file_path)
        self.audit = audit or AuditLog(settings.audit_log_path)
        self.preparer = preparer or DiskPreparationExecutor(
            self.executor,
            policy=ErrorPolicy.CONTINUE_ON_ERROR,
            settle_seconds=settings.partprobe_settle_seconds,
        )
        self.mount_manager = mount_manager or PoolMountManager(
            self.executor,
            policy=ErrorPolicy.ABORT_ON_ERROR,
            share_group=settings.share_group,
        )
        self.snapraid = SnapRAIDManager(settings, self.supervisor, self.backend_selector, self.audit)
        self.nonraid = NonRAIDManager(settings, self.supervisor, self.mount_manager,
                                      self.backend_selector, self.state_store, self.audit)

    def get_backend(self) -> StorageBackend:
        return self.backend_selector.get_backend()

    def configure_pool(self,
                       disks: Iterable[Union[DiskSpec, dict]],
                       start_sync: bool = True) -> PoolConfigureResult:
        """
        Validate, prepare, mount and persist a parity pool.

        Disks whose preparation fails are reported as warnings and left out
        of the pool; the rest are mounted and unioned. When the pool has a
        parity disk the initial sync is started in the background.

        Args:
            disks: Disk role plan (DiskSpec or {id, role, format} dicts)
            start_sync: Start the initial parity sync when parity is configured

        Returns:
            PoolConfigureResult with the step log

        Raises:
            BackendMismatchError: If the parity pool backend is not active
            ValidationError: If the plan is invalid (no side effects)
            ConflictError: If a sync is running (no side effects)
            ConfigurationError: If a mount, union or config write fails
        """
        self.backend_selector.require(StorageBackend.PARITY_POOL)
        plan = validate_disk_plan(disks, StorageBackend.PARITY_POOL)

        sync_status = self.supervisor.status(OperationKind.SYNC)
        if sync_status.running:
            raise ConflictError(OperationKind.SYNC.value, sync_status.progress)

        settings = self.settings
        preparation = self.preparer.prepare(plan)
        results = list(preparation.log)
        warnings = [warning.message for warning in preparation.warnings]

        failed = set(preparation.failed)
        usable = [disk for disk in plan if disk.id not in failed]
        assignment = build_assignment(usable, settings)
        if not assignment.data:
            raise ConfigurationError("No data disks could be prepared", results=results)

        try:
            self._apply(assignment, usable, results, warnings)
        except ConfigurationError as exc:
            if not exc.results:
                exc.results = list(results)
            raise

        self.audit.record(
            "STORAGE_CONFIGURED",
            disks=[disk.id for disk in usable],
            dataCount=len(assignment.data),
            parityCount=len(assignment.parity),
        )
        logger.info(
            f"Storage pool configured: {len(assignment.data)} data, {len(assignment.parity)} parity, "
            f"{len(assignment.cache)} cache disks"
        )

        sync = None
        if start_sync and assignment.has_parity:
            results.append("Starting initial SnapRAID sync (this may take a while)...")
            try:
                sync = self.snapraid.start_sync()
            except ConflictError as exc:
                logger.warning(f"Initial sync not started: {exc.message}")
                warnings.append(exc.message)

        return PoolConfigureResult(
            results=results,
            pool_mount=settings.pool_mount_point,
            disks=usable,
            warnings=warnings,
            sync=sync,
        )

    def _apply(self, assignment, usable: List[DiskSpec], results: List[str], warnings: List[str]) -> None:
        settings = self.settings
        self.mount_manager.mount_assignment(assignment, results)

        generated = generate_pool_plan(assignment, StorageBackend.PARITY_POOL, settings)
        if generated.text:
            self.mount_manager.write_config_file(settings.snapraid_config_path, generated.text)
            results.append("SnapRAID configuration created")
        else:
            results.append("SnapRAID skipped (no parity disks configured)")

        self.mount_manager.mount_union(
            generated.union_sources, settings.pool_mount_point, union_mount_options(), results
        )
        if not self.mount_manager.apply_share_permissions(settings.pool_mount_point, results):
            warnings.append("Could not set Samba permissions")

        uuids = self.mount_manager.resolve_uuids([disk.partition for disk in assignment.mounted])
        block = generate_fstab_block(assignment, uuids, settings.pool_mount_point)
        self.mount_manager.update_fstab(block, settings.fstab_path)
        results.append(f"Updated {settings.fstab_path} for persistence")

        self.state_store.save_pool_configuration(PoolConfiguration(disks=usable, configured=True))

    def save_storage_config(self, entries: Any) -> List[DiskSpec]:
        """
        Persist a role plan without applying it.

        Raises:
            ValidationError: If an entry has an invalid id or role
            ConfigurationError: If the state file cannot be written
        """
        specs = validate_storage_config(entries)
        pool = self.state_store.get_pool_configuration()
        pool.disks = specs
        self.state_store.save_pool_configuration(pool)
        self.audit.record("STORAGE_CONFIG", disks=len(specs))
        return specs

    def get_storage_config(self) -> PoolConfiguration:
        return self.state_store.get_pool_configuration()

    def get_pool_status(self) -> PoolStatus:
        """Derive pool status from snapraid.conf, the mount table and the sync log."""
        settings = self.settings
        status = PoolStatus(
            configured=self._snapraid_configured(),
            running=self._union_mounted(),
            pool_mount=settings.pool_mount_point,
            last_sync=self._last_sync(),
            pool_configured=self.state_store.get_pool_configuration().configured,
        )

        if status.running:
            try:
                usage = psutil.disk_usage(settings.pool_mount_point)
            except OSError as exc:
                logger.warning(f"Could not read pool usage: {exc}")
            else:
                status.total_bytes = usage.total
                status.used_bytes = usage.used
                status.free_bytes = usage.free

        return status

    def _snapraid_configured(self) -> bool:
        try:
            with open(self.settings.snapraid_config_path, "r") as f:
                content = f.read()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning(f"Cannot read {self.settings.snapraid_config_path}: {exc}")
            return False
        return "content" in content and "disk" in content

    def _union_mounted(self) -> bool:
        target = self.settings.pool_mount_point.rstrip("/") or "/"
        for partition in psutil.disk_partitions(all=True):
            if partition.mountpoint == target and "mergerfs" in partition.fstype:
                return True
        return False

    def _last_sync(self) -> Optional[str]:
        try:
            with open(self.settings.sync_log_path, "r") as f:
                tail = "".join(deque(f, maxlen=SYNC_LOG_TAIL_LINES))
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(f"Cannot read sync log {self.settings.sync_log_path}: {exc}")
            return None
        match = LAST_SYNC_PATTERN.search(tail)
        return match.group(1).strip() if match else None
