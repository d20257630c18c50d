"""NonRAID kernel array status and lifecycle operations."""

import json
import logging
import os
import shutil
from typing import Any, Dict, Optional, Sequence, Union

import psutil

from .audit import AuditLog
from .backend import BackendSelector
from .config_generator import array_mount_points
from .config_manager import StorageSettings
from .errors import SubprocessFailure
from .models import (
    ArrayDiskUsage, ArrayStatus, OperationKind, OperationState, OperationStatus,
    ShareMode, StorageBackend
)
from .mount_manager import PoolMountManager
from .pipeline import ArrayConfigurePipeline
from .state_store import StateStore
from .supervisor import OperationSupervisor
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

NMDCTL_BINARY = "nmdctl"

STATE_NOT_INSTALLED = "NOT_INSTALLED"
STATE_NOT_CONFIGURED = "NOT_CONFIGURED"
STATE_UNKNOWN = "UNKNOWN"


class NonRAIDManager:
    """Kernel array operations driven through nmdctl."""

    def __init__(self,
                 settings: StorageSettings,
                 supervisor: OperationSupervisor,
                 mount_manager: PoolMountManager,
                 backend_selector: Optional[BackendSelector] = None,
                 state_store: Optional[StateStore] = None,
                 audit: Optional[AuditLog] = None):
        self.settings = settings
        self.supervisor = supervisor
        self.executor: SystemCommandExecutor = supervisor.executor
        self.mount_manager = mount_manager
        self.backend_selector = backend_selector
        self.audit = audit
        self.pipeline = ArrayConfigurePipeline(
            self.executor, supervisor, mount_manager, settings,
            state_store=state_store, audit=audit,
        )

    def is_installed(self) -> bool:
        return shutil.which(NMDCTL_BINARY) is not None

    def get_array_status(self) -> ArrayStatus:
        """
        Derive the array status from nmdctl and the mounted data disks.

        Returns:
            ArrayStatus; NOT_INSTALLED without nmdctl, NOT_CONFIGURED
            without the array superblock file

        Raises:
            BackendMismatchError: If the kernel array backend is not active
            SubprocessFailure: If nmdctl status fails or returns unparseable output
        """
        self._require_backend()
        check = self.supervisor.status(OperationKind.CHECK)

        if not self.is_installed():
            return ArrayStatus(installed=False, configured=False, state=STATE_NOT_INSTALLED)

        if not os.path.exists(self.settings.nonraid_dat_path):
            return ArrayStatus(installed=True, configured=False, state=STATE_NOT_CONFIGURED)

        success, stdout, stderr = self.executor.run(CommandType.NMDCTL, ['status', '-o', 'json'])
        if not success:
            raise SubprocessFailure("nmdctl status -o json", None, stderr)
        try:
            report = json.loads(stdout)
        except json.JSONDecodeError as exc:
            logger.error(f"Unparseable nmdctl status output: {exc}")
            raise SubprocessFailure("nmdctl status -o json", None, f"invalid JSON: {exc}") from exc

        data_disks = int(report.get("dataDisks") or 0)
        mount_points = array_mount_points(data_disks, self.settings.nonraid_mount_prefix)

        return ArrayStatus(
            installed=True,
            configured=True,
            state=report.get("state", STATE_UNKNOWN),
            parity_valid=report.get("parityValid"),
            parity_disk=report.get("parityDisk"),
            data_disk_count=data_disks,
            disks=[self._disk_usage(slot, mp) for slot, mp in enumerate(mount_points, start=1)],
            last_check=report.get("lastCheck"),
            checking=check.running,
            check_progress=check.progress,
        )

    def start_configure(self,
                        data_disks: Sequence[str],
                        parity_disk: Union[str, Sequence[str]],
                        share_mode: Union[ShareMode, str] = ShareMode.INDIVIDUAL) -> OperationStatus:
        """
        Start the configure pipeline in the background.

        Raises:
            BackendMismatchError: If the kernel array backend is not active
            ValidationError: If the disk plan or share mode is invalid
            ConflictError: If a configure run is already active
        """
        self._require_backend()
        return self.pipeline.start(data_disks, parity_disk, share_mode)

    def get_configure_progress(self) -> OperationStatus:
        return self.supervisor.status(OperationKind.CONFIGURE)

    def start_array(self) -> None:
        """
        Start the array and mount its disks.

        Raises:
            BackendMismatchError: If the kernel array backend is not active
            SubprocessFailure: If nmdctl fails
        """
        self._require_backend()
        self.mount_manager.array_start()
        self.mount_manager.array_mount()
        logger.info("Array started")

    def stop_array(self) -> None:
        """
        Unmount the array disks and stop the array.

        Raises:
            BackendMismatchError: If the kernel array backend is not active
            SubprocessFailure: If nmdctl fails
        """
        self._require_backend()
        self.mount_manager.array_unmount()
        self.mount_manager.array_stop()
        logger.info("Array stopped")

    def start_parity_check(self) -> OperationStatus:
        """
        Start a parity check in the background.

        Raises:
            BackendMismatchError: If the kernel array backend is not active
            ConflictError: If a check is already running
        """
        self._require_backend()
        return self.supervisor.start(
            OperationKind.CHECK, CommandType.NMDCTL, ['check'],
            label="Parity check",
            estimate=False,
            on_exit=self._record_check_exit,
        )

    def get_check_progress(self) -> OperationStatus:
        return self.supervisor.status(OperationKind.CHECK)

    def cancel_parity_check(self) -> bool:
        return self.supervisor.cancel(OperationKind.CHECK)

    def to_dict(self, status: ArrayStatus) -> Dict[str, Any]:
        return status.to_dict()

    def _disk_usage(self, slot: int, mount_point: str) -> ArrayDiskUsage:
        if not os.path.ismount(mount_point):
            return ArrayDiskUsage(slot=slot, mount_point=mount_point, mounted=False)
        try:
            usage = psutil.disk_usage(mount_point)
        except OSError as exc:
            logger.warning(f"Could not read usage of {mount_point}: {exc}")
            return ArrayDiskUsage(slot=slot, mount_point=mount_point, mounted=False)
        return ArrayDiskUsage(
            slot=slot,
            mount_point=mount_point,
            mounted=True,
            total_bytes=usage.total,
            used_bytes=usage.used,
            free_bytes=usage.free,
        )

    def _require_backend(self) -> None:
        if self.backend_selector is not None:
            self.backend_selector.require(StorageBackend.KERNEL_ARRAY)

    def _record_check_exit(self, status: OperationStatus) -> None:
        if status.state == OperationState.FAILED:
            logger.warning(f"Parity check failed: {status.error}")
        if self.audit:
            self.audit.record("ARRAY_PARITY_CHECK", state=status.state.value, code=status.exit_code)
