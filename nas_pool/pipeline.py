"""Multi-step configuration of a NonRAID kernel array."""

import logging
import threading
from typing import Callable, List, Optional, Sequence, Union

from .audit import AuditLog
from .config_generator import (
    array_mount_points, array_union_mount_options, build_assignment, generate_pool_plan
)
from .config_manager import StorageSettings
from .errors import StorageError, SubprocessFailure, ValidationError
from .models import (
    DiskRole, DiskSpec, OperationKind, OperationState, OperationStatus,
    PoolConfiguration, ShareMode, StorageBackend
)
from .mount_manager import PoolMountManager
from .state_store import StateStore
from .supervisor import OperationSupervisor
from .system_executor import CommandType, SystemCommandExecutor
from .validator import validate_disk_plan


logger = logging.getLogger(__name__)

STEP_PARTITION = "partition"
STEP_ARRAY_CREATE = "array-create"
STEP_ARRAY_START = "array-start"
STEP_FILESYSTEM_CREATE = "filesystem-create"
STEP_MOUNT = "mount"
STEP_SHARE_CONFIG = "share-config"
STEP_INITIAL_CHECK = "initial-check"
STEP_COMPLETE = "complete"

PIPELINE_STEPS = (
    STEP_PARTITION,
    STEP_ARRAY_CREATE,
    STEP_ARRAY_START,
    STEP_FILESYSTEM_CREATE,
    STEP_MOUNT,
    STEP_SHARE_CONFIG,
    STEP_INITIAL_CHECK,
)

ProgressReporter = Callable[[int], None]

CHECK_POLL_SECONDS = 0.5


def array_device(slot: int) -> str:
    """Block device the kernel array exposes for a data slot."""
    return f"/dev/nmd{slot}p1"


def build_array_plan(data_disks: Sequence[str],
                     parity_disk: Union[str, Sequence[str]]) -> List[DiskSpec]:
    """
    Turn a configure request into a validated kernel-array disk plan.

    Raises:
        ValidationError: If the plan breaks a role rule
    """
    if isinstance(parity_disk, (list, tuple)):
        parity_disk = parity_disk[0] if parity_disk else None
    entries = [{"id": disk, "role": DiskRole.DATA.value} for disk in (data_disks or [])]
    if parity_disk:
        entries.append({"id": parity_disk, "role": DiskRole.PARITY.value})
    return validate_disk_plan(entries, StorageBackend.KERNEL_ARRAY)


class ArrayConfigurePipeline:
    """
    Runs the kernel-array configure steps under the 'configure' operation.

    Steps run strictly in order: partition, array-create, array-start,
    filesystem-create, mount, share-config, initial-check. Each step
    reports its own 0-100 progress. The first failure stops the pipeline
    with the failing step recorded; completed steps are not rolled back.
    """

    def __init__(self,
                 executor: SystemCommandExecutor,
                 supervisor: OperationSupervisor,
                 mount_manager: PoolMountManager,
                 settings: StorageSettings,
                 state_store: Optional[StateStore] = None,
                 audit: Optional[AuditLog] = None):
        self.executor = executor
        self.supervisor = supervisor
        self.mount_manager = mount_manager
        self.settings = settings
        self.state_store = state_store
        self.audit = audit
        self.tracker = supervisor.tracker(OperationKind.CONFIGURE)
        self.check_poll_interval = CHECK_POLL_SECONDS

    def start(self,
              data_disks: Sequence[str],
              parity_disk: Union[str, Sequence[str]],
              share_mode: Union[ShareMode, str] = ShareMode.INDIVIDUAL,
              background: bool = True) -> OperationStatus:
        """
        Validate the request and launch the pipeline.

        Args:
            data_disks: Data disk ids, in slot order
            parity_disk: Parity disk id (a one-element list is accepted)
            share_mode: Share layout written in the share-config step
            background: Run on a daemon thread and return immediately

        Returns:
            Status snapshot of the configure operation

        Raises:
            ValidationError: If the disk plan is invalid (nothing is started)
            ConflictError: If a configure operation is already running
        """
        plan = build_array_plan(data_disks, parity_disk)
        try:
            share_mode = ShareMode(share_mode) if share_mode else ShareMode.INDIVIDUAL
        except ValueError:
            raise ValidationError(f"Invalid share mode: {share_mode!r}", rule="share-mode")

        status, _ = self.tracker.begin(status_text="Partitioning disks...", step=STEP_PARTITION)
        logger.info(f"Configuring kernel array with {len(plan) - 1} data disks ({share_mode.value} shares)")

        if background:
            threading.Thread(
                target=self.run,
                args=(plan, share_mode),
                name="array-configure",
                daemon=True
            ).start()
            return status

        return self.run(plan, share_mode)

    def run(self, plan: Sequence[DiskSpec], share_mode: ShareMode) -> OperationStatus:
        """Execute every step; the tracker must already be running."""
        data = [disk for disk in plan if disk.role == DiskRole.DATA]
        parity = next(disk for disk in plan if disk.role == DiskRole.PARITY)

        steps = [
            (STEP_PARTITION, lambda report: self._partition(data + [parity], report)),
            (STEP_ARRAY_CREATE, lambda report: self._create_array(data, parity, report)),
            (STEP_ARRAY_START, self._start_array),
            (STEP_FILESYSTEM_CREATE, lambda report: self._create_filesystems(len(data), report)),
            (STEP_MOUNT, lambda report: self._mount(len(data), report)),
            (STEP_SHARE_CONFIG, lambda report: self._configure_shares(data, share_mode, report)),
            (STEP_INITIAL_CHECK, self._initial_check),
        ]

        step = STEP_PARTITION
        try:
            for step, action in steps:
                if not self.tracker.update(progress=0, step=step, status_text=f"Running step: {step}"):
                    logger.info(f"Array configure stopped before step {step}")
                    return self.tracker.snapshot()
                action(self._reporter())
                logger.info(f"Array configure step {step} finished", extra={"step": step})

            step = STEP_COMPLETE
            if not self.tracker.update(step=step, progress=100, status_text="Saving configuration..."):
                logger.info("Array configure cancelled, configuration not saved")
                return self.tracker.snapshot()
            if self.state_store is not None:
                self.state_store.save_pool_configuration(PoolConfiguration(disks=list(plan), configured=True))
        except StorageError as exc:
            logger.error(f"Array configure failed at step {step}: {exc.message}", extra={"step": step})
            return self.tracker.finish(
                OperationState.FAILED,
                status_text=f"Configuration failed at {step}",
                error=exc.message,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error during array configure step {step}", extra={"step": step})
            return self.tracker.finish(
                OperationState.FAILED,
                status_text=f"Configuration failed at {step}",
                error=str(exc),
            )

        if self.audit:
            self.audit.record("ARRAY_CONFIGURED", data_disks=[disk.id for disk in data],
                              parity_disk=parity.id, share_mode=share_mode.value)
        return self.tracker.finish(OperationState.COMPLETED, progress=100,
                                   status_text="Array configured", step=STEP_COMPLETE)

    def _reporter(self) -> ProgressReporter:
        def report(progress: int) -> None:
            self.tracker.update(progress=progress)
        return report

    def _run(self, command_type: CommandType, args: List[str]) -> str:
        try:
            success, stdout, stderr = self.executor.run(command_type, args)
        except ValueError as exc:
            raise SubprocessFailure(f"{command_type.value} {' '.join(args)}", None, str(exc)) from exc
        if not success:
            raise SubprocessFailure(f"{command_type.value} {' '.join(args)}", None, stderr)
        return stdout

    def _partition(self, disks: Sequence[DiskSpec], report: ProgressReporter) -> None:
        for index, disk in enumerate(disks, start=1):
            self._run(CommandType.SGDISK, ['-o', '-a', '8', '-n', '1:32K:0', disk.device_path])
            report(round(index / len(disks) * 100))

    def _create_array(self, data: Sequence[DiskSpec], parity: DiskSpec, report: ProgressReporter) -> None:
        args = ['create', '-p', f"/dev/{parity.partition}"]
        args.extend(f"/dev/{disk.partition}" for disk in data)
        self._run(CommandType.NMDCTL, args)
        report(100)

    def _start_array(self, report: ProgressReporter) -> None:
        self.mount_manager.array_start()
        report(100)

    def _create_filesystems(self, disk_count: int, report: ProgressReporter) -> None:
        for slot in range(1, disk_count + 1):
            self._run(CommandType.MKFS_XFS, ['-f', array_device(slot)])
            report(round(slot / disk_count * 100))

    def _mount(self, disk_count: int, report: ProgressReporter) -> None:
        mount_points = array_mount_points(disk_count, self.settings.nonraid_mount_prefix)
        for slot, mount_point in enumerate(mount_points, start=1):
            self.mount_manager.make_directory(mount_point)
            report(round(slot / disk_count * 50))
        self.mount_manager.array_mount()
        report(100)

    def _configure_shares(self, data: Sequence[DiskSpec], share_mode: ShareMode, report: ProgressReporter) -> None:
        settings = self.settings
        generated = generate_pool_plan(build_assignment(data, settings), StorageBackend.KERNEL_ARRAY,
                                       settings, share_mode)
        if generated.union_sources:
            self.mount_manager.mount_union(generated.union_sources, settings.pool_mount_point,
                                           array_union_mount_options())
        report(30)

        self.mount_manager.write_config_file(settings.samba_config_path, generated.text)
        report(60)

        self.mount_manager.restart_samba()
        report(100)

    def _initial_check(self, report: ProgressReporter) -> None:
        status = self.supervisor.start(
            OperationKind.CHECK, CommandType.NMDCTL, ['check'],
            label="Parity check",
            estimate=False,
            on_progress=lambda check: report(check.progress),
        )
        while status.running:
            status = self.supervisor.wait(OperationKind.CHECK, timeout=self.check_poll_interval)
            if status.running and not self.tracker.running:
                logger.info("Array configure cancelled, stopping initial parity check")
                self.supervisor.cancel(OperationKind.CHECK)
                status = self.supervisor.status(OperationKind.CHECK)

        if not self.tracker.running:
            return
        if status.state != OperationState.COMPLETED:
            raise SubprocessFailure("nmdctl check", status.exit_code,
                                    status.error or f"parity check {status.state.value}")
        report(100)
