"""SnapRAID parity operations and status for the parity pool backend."""

import re
import logging
from typing import Dict, List, Optional, Any
from datetime import datetime, timedelta
from dataclasses import dataclass, asdict
from enum import Enum

from .audit import AuditLog
from .backend import BackendSelector
from .config_manager import StorageSettings
from .models import OperationKind, OperationState, OperationStatus, StorageBackend
from .supervisor import OperationSupervisor
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

DRIVE_LINE_PATTERN = re.compile(
    r'^\s*(\d+)\s+([\d.]+)\s+GB\s+([\d.]+)\s+GB\s+([\d.]+)\s+GB\s+(\d+)%\s+(\w+)'
)


class SnapRAIDStatus(Enum):
    """Overall parity health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"
    UNKNOWN = "unknown"


class ParityStatus(Enum):
    """Parity state as reported by 'snapraid status'."""
    UP_TO_DATE = "up_to_date"
    OUT_OF_SYNC = "out_of_sync"
    MISSING = "missing"
    UNKNOWN = "unknown"


@dataclass
class DriveStatus:
    """One disk row of the status table."""
    name: str
    size_gb: float
    used_gb: float
    free_gb: float
    files: int

    @property
    def usage_percent(self) -> float:
        """Calculate usage percentage."""
        if self.size_gb == 0:
            return 0.0
        return (self.used_gb / self.size_gb) * 100


@dataclass
class ParityInfo:
    """Parity coverage and freshness."""
    status: ParityStatus = ParityStatus.UNKNOWN
    coverage_percent: float = 0.0
    last_sync: Optional[datetime] = None


@dataclass
class SnapRAIDStatusInfo:
    """Parsed 'snapraid status' report."""
    overall_status: SnapRAIDStatus
    parity_info: ParityInfo
    data_drives: List[DriveStatus]
    parity_drives: List[DriveStatus]
    total_files: int
    config_path: str
    checked_at: datetime
    version: Optional[str] = None


def parse_status_output(output: str, config_path: str) -> SnapRAIDStatusInfo:
    """
    Parse the text of 'snapraid status'.

    Args:
        output: Raw status output
        config_path: Config the status was read with

    Returns:
        Parsed SnapRAIDStatusInfo
    """
    data_drives: List[DriveStatus] = []
    parity_drives: List[DriveStatus] = []
    parity = ParityInfo()
    total_files = 0
    version = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        lowered = line.lower()

        version_match = re.match(r'SnapRAID\s+v?(\d+\.\d+)', line)
        if version_match:
            version = version_match.group(1)

        # Files Size Used Free Use Name, e.g. "1234 500.0 GB 400.0 GB 100.0 GB 80% d1"
        drive_match = DRIVE_LINE_PATTERN.match(line)
        if drive_match:
            files, size_gb, used_gb, free_gb, _usage, name = drive_match.groups()
            drive = DriveStatus(name=name, size_gb=float(size_gb), used_gb=float(used_gb),
                                free_gb=float(free_gb), files=int(files))
            if name.startswith('parity'):
                parity_drives.append(drive)
            else:
                data_drives.append(drive)
                total_files += drive.files

        if 'parity is' in lowered:
            if 'up-to-date' in lowered:
                parity.status = ParityStatus.UP_TO_DATE
            elif 'out-of-sync' in lowered:
                parity.status = ParityStatus.OUT_OF_SYNC
            elif 'missing' in lowered:
                parity.status = ParityStatus.MISSING
        elif 'no sync is in progress' in lowered and parity.status == ParityStatus.UNKNOWN:
            parity.status = ParityStatus.UP_TO_DATE

        sync_match = re.search(r'last sync was (\d+) days ago', line)
        if sync_match:
            parity.last_sync = datetime.now() - timedelta(days=int(sync_match.group(1)))

        coverage_match = re.search(r'You have a (\d+)% of coverage', line)
        if coverage_match:
            parity.coverage_percent = float(coverage_match.group(1))

        total_match = re.search(r'Total files:\s+(\d+)', line)
        if total_match:
            total_files = int(total_match.group(1))

    overall = {
        ParityStatus.UP_TO_DATE: SnapRAIDStatus.HEALTHY,
        ParityStatus.OUT_OF_SYNC: SnapRAIDStatus.DEGRADED,
        ParityStatus.MISSING: SnapRAIDStatus.ERROR,
    }.get(parity.status, SnapRAIDStatus.UNKNOWN)

    return SnapRAIDStatusInfo(
        overall_status=overall,
        parity_info=parity,
        data_drives=data_drives,
        parity_drives=parity_drives,
        total_files=total_files,
        config_path=config_path,
        checked_at=datetime.now(),
        version=version,
    )


class SnapRAIDManager:
    """Starts and tracks SnapRAID sync and scrub runs."""

    def __init__(self,
                 settings: StorageSettings,
                 supervisor: OperationSupervisor,
                 backend_selector: Optional[BackendSelector] = None,
                 audit: Optional[AuditLog] = None):
        """
        Args:
            settings: Storage settings (config path, scrub defaults)
            supervisor: Shared operation supervisor
            backend_selector: When given, operations require the parity pool backend
            audit: Optional audit trail
        """
        self.settings = settings
        self.supervisor = supervisor
        self.executor: SystemCommandExecutor = supervisor.executor
        self.backend_selector = backend_selector
        self.audit = audit

    def start_sync(self) -> OperationStatus:
        """
        Start an initial or incremental parity sync in the background.

        Returns:
            Sync status snapshot (running, or failed if snapraid could not start)

        Raises:
            BackendMismatchError: If the parity pool backend is not active
            ConflictError: If a sync is already running
        """
        self._require_backend()
        args = self.executor.snapraid_args('sync', self.settings.snapraid_config_path, ['-v'])

        logger.info("Starting SnapRAID sync")
        return self.supervisor.start(
            OperationKind.SYNC, CommandType.SNAPRAID, args,
            label="Sync",
            on_exit=self._record_sync_exit,
        )

    def get_sync_status(self) -> OperationStatus:
        return self.supervisor.status(OperationKind.SYNC)

    def cancel_sync(self) -> bool:
        return self.supervisor.cancel(OperationKind.SYNC)

    def scrub(self, percentage: Optional[int] = None) -> OperationStatus:
        """
        Run a SnapRAID scrub and wait for it to finish.

        Args:
            percentage: Percentage of the array to verify (1-100); defaults
                to the configured scrub percentage

        Returns:
            Final scrub status

        Raises:
            ValueError: If percentage is out of range
            BackendMismatchError: If the parity pool backend is not active
            ConflictError: If a scrub is already running
        """
        if percentage is None:
            percentage = self.settings.scrub_percentage
        if not 1 <= percentage <= 100:
            raise ValueError("Percentage must be between 1 and 100")
        self._require_backend()

        args = self.executor.snapraid_args('scrub', self.settings.snapraid_config_path,
                                           ['-p', str(percentage)])
        logger.info(f"Starting SnapRAID scrub operation ({percentage}%)")
        status = self.supervisor.run_blocking(
            OperationKind.SCRUB, CommandType.SNAPRAID, args,
            timeout=self.settings.scrub_timeout,
            label="Scrub",
        )

        if self.audit:
            self.audit.record("SNAPRAID_SCRUB", percentage=percentage, state=status.state.value)
        return status

    def get_status(self) -> Optional[SnapRAIDStatusInfo]:
        """
        Read parity health from 'snapraid status'.

        Returns:
            Parsed status, or None if the command failed
        """
        config_path = self.settings.snapraid_config_path
        success, stdout, stderr = self.executor.execute_snapraid_command('status', config_path=config_path)
        if not success:
            logger.error(f"SnapRAID status command failed: {stderr}")
            return None
        return parse_status_output(stdout, config_path)

    def to_dict(self, status_info: SnapRAIDStatusInfo) -> Dict[str, Any]:
        """
        Convert SnapRAIDStatusInfo to dictionary for JSON serialization.

        Args:
            status_info: Status information to convert

        Returns:
            Dictionary representation
        """
        result = asdict(status_info)
        result['overall_status'] = status_info.overall_status.value
        result['parity_info']['status'] = status_info.parity_info.status.value
        if status_info.parity_info.last_sync:
            result['parity_info']['last_sync'] = status_info.parity_info.last_sync.isoformat()
        result['checked_at'] = status_info.checked_at.isoformat()

        for key in ('data_drives', 'parity_drives'):
            for drive, drive_data in zip(getattr(status_info, key), result[key]):
                drive_data['usage_percent'] = round(drive.usage_percent, 2)

        return result

    def _require_backend(self) -> None:
        if self.backend_selector is not None:
            self.backend_selector.require(StorageBackend.PARITY_POOL)

    def _record_sync_exit(self, status: OperationStatus) -> None:
        if self.audit is None:
            return
        duration = None
        if status.start_time and status.end_time:
            duration = round((status.end_time - status.start_time).total_seconds(), 3)
        self.audit.record(
            "SNAPRAID_SYNC_COMPLETE",
            state=status.state.value,
            code=status.exit_code,
            duration=duration,
        )
        if status.state == OperationState.FAILED:
            logger.warning(f"SnapRAID sync failed: {status.error}")
