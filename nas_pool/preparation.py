"""Partitioning and formatting of disks before they join the pool."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Sequence

from .errors import ConfigurationError, PreparationWarning
from .models import DiskSpec
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

# ext4 volume labels are limited to 16 bytes
MAX_LABEL_LENGTH = 16


class ErrorPolicy(Enum):
    """What a multi-disk step does when one disk fails."""
    CONTINUE_ON_ERROR = "continue"
    ABORT_ON_ERROR = "abort"


@dataclass
class PreparationResult:
    """Outcome of preparing a set of disks."""
    log: List[str] = field(default_factory=list)
    warnings: List[PreparationWarning] = field(default_factory=list)
    prepared: List[str] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [warning.disk_id for warning in self.warnings]


def filesystem_label(disk: DiskSpec) -> str:
    """Label a filesystem with its role and disk id, e.g. 'data_sda'."""
    return f"{disk.role.value}_{disk.id}"[:MAX_LABEL_LENGTH]


class DiskPreparationExecutor:
    """Creates a GPT label, one full-disk partition and an ext4 filesystem per disk."""

    def __init__(self,
                 executor: SystemCommandExecutor,
                 policy: ErrorPolicy = ErrorPolicy.CONTINUE_ON_ERROR,
                 settle_seconds: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            executor: Command executor used for parted/partprobe/mkfs
            policy: Behaviour when a single disk fails
            settle_seconds: Delay after partprobe so udev can create the partition node
            sleep: Sleep function, replaceable in tests
        """
        self.executor = executor
        self.policy = policy
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    def prepare(self, disks: Sequence[DiskSpec]) -> PreparationResult:
        """
        Prepare every disk flagged for formatting.

        Disks are handled one at a time. Under CONTINUE_ON_ERROR a failed
        disk becomes a warning entry and the next disk is attempted; under
        ABORT_ON_ERROR the first failure raises.

        Args:
            disks: Validated disk plan

        Returns:
            PreparationResult with the step log, warnings and prepared ids

        Raises:
            ConfigurationError: On failure when the policy is ABORT_ON_ERROR
        """
        result = PreparationResult()

        for disk in disks:
            if not disk.format:
                continue

            result.log.append(f"Formatting {disk.device_path}...")
            try:
                self.prepare_disk(disk)
            except PreparationWarning as warning:
                logger.warning(warning.message)
                result.log.append(warning.message)
                result.warnings.append(warning)
                if self.policy == ErrorPolicy.ABORT_ON_ERROR:
                    raise ConfigurationError(warning.message, results=result.log) from warning
                continue

            result.prepared.append(disk.id)
            result.log.append(f"Formatted /dev/{disk.partition} as ext4")

        return result

    def prepare_disk(self, disk: DiskSpec) -> None:
        """
        Partition and format a single disk.

        Raises:
            PreparationWarning: If any command for this disk fails
        """
        device = disk.device_path
        steps = [
            (CommandType.PARTED, ['-s', device, 'mklabel', 'gpt']),
            (CommandType.PARTED, ['-s', device, 'mkpart', 'primary', 'ext4', '0%', '100%']),
            (CommandType.PARTPROBE, [device]),
        ]
        for command_type, args in steps:
            self._run(disk, command_type, args)

        if self.settle_seconds > 0:
            self._sleep(self.settle_seconds)

        self._run(disk, CommandType.MKFS_EXT4,
                  ['-F', '-L', filesystem_label(disk), f"/dev/{disk.partition}"])
        logger.info(f"Prepared {device} ({disk.role.value})")

    def _run(self, disk: DiskSpec, command_type: CommandType, args: List[str]) -> None:
        try:
            success, _stdout, stderr = self.executor.run(command_type, args)
        except ValueError as exc:
            raise PreparationWarning(disk.id, str(exc)) from exc
        if not success:
            raise PreparationWarning(disk.id, stderr.strip() or f"{command_type.value} failed")
