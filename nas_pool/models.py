"""Data models for storage pool management."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class DiskRole(Enum):
    """Role a disk plays in the storage pool."""
    DATA = "data"
    PARITY = "parity"
    CACHE = "cache"
    NONE = "none"


class StorageBackend(Enum):
    """Storage backend driving the pool."""
    PARITY_POOL = "parity_pool"
    KERNEL_ARRAY = "kernel_array"

    @classmethod
    def parse(cls, value: str) -> "StorageBackend":
        """Parse a backend name, accepting the persisted aliases."""
        normalized = value.strip().lower()
        if normalized in BACKEND_ALIASES:
            return BACKEND_ALIASES[normalized]
        return cls(normalized)


BACKEND_ALIASES = {
    "snapraid": StorageBackend.PARITY_POOL,
    "mergerfs": StorageBackend.PARITY_POOL,
    "nonraid": StorageBackend.KERNEL_ARRAY,
}


class ShareMode(Enum):
    """How network shares are laid out over kernel-array disks."""
    INDIVIDUAL = "individual"
    MERGED = "merged"
    CATEGORIES = "categories"


class OperationKind(Enum):
    """Long-running operations tracked by the supervisor."""
    SYNC = "sync"
    SCRUB = "scrub"
    CHECK = "check"
    CONFIGURE = "configure"


class OperationState(Enum):
    """Lifecycle state of a supervised operation."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def partition_name(disk_id: str) -> str:
    """
    Return the first partition name for a disk.

    Devices whose name ends in a digit (nvme0n1, mmcblk0) separate the
    partition number with a 'p'.

    Args:
        disk_id: Disk name without the /dev/ prefix

    Returns:
        Partition name, e.g. 'sda1' or 'nvme0n1p1'
    """
    if disk_id[-1:].isdigit():
        return f"{disk_id}p1"
    return f"{disk_id}1"


@dataclass(frozen=True)
class DiskSpec:
    """A requested role for one physical disk."""
    id: str
    role: DiskRole
    format: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiskSpec":
        """Build a DiskSpec from a request payload entry."""
        disk_id = str(data.get("id", "")).strip()
        if disk_id.startswith("/dev/"):
            disk_id = disk_id[len("/dev/"):]
        role = data.get("role")
        if not isinstance(role, DiskRole):
            role = DiskRole(role)
        return cls(id=disk_id, role=role, format=data.get("format") is True)

    @property
    def device_path(self) -> str:
        return f"/dev/{self.id}"

    @property
    def partition(self) -> str:
        return partition_name(self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role.value, "format": self.format}


@dataclass(frozen=True)
class MountedDisk:
    """A disk of a role assignment with its computed mount location."""
    disk_id: str
    role: DiskRole
    partition: str
    mount_point: str
    number: int

    @property
    def partition_path(self) -> str:
        return f"/dev/{self.partition}"


@dataclass(frozen=True)
class DiskRoleAssignment:
    """Disk plan partitioned by role, in submission order."""
    data: List[MountedDisk] = field(default_factory=list)
    parity: List[MountedDisk] = field(default_factory=list)
    cache: List[MountedDisk] = field(default_factory=list)

    @property
    def mounted(self) -> List[MountedDisk]:
        """All disks that get a mount point, data first."""
        return list(self.data) + list(self.parity) + list(self.cache)

    @property
    def data_mount_points(self) -> List[str]:
        return [disk.mount_point for disk in self.data]

    @property
    def has_parity(self) -> bool:
        return bool(self.parity)


@dataclass
class PoolConfiguration:
    """Persisted pool layout."""
    disks: List[DiskSpec] = field(default_factory=list)
    configured: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storageConfig": [{"id": d.id, "role": d.role.value} for d in self.disks],
            "poolConfigured": self.configured,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolConfiguration":
        disks = []
        for entry in data.get("storageConfig") or []:
            try:
                disks.append(DiskSpec.from_dict(entry))
            except (ValueError, AttributeError):
                continue
        return cls(disks=disks, configured=bool(data.get("poolConfigured", False)))


@dataclass
class OperationStatus:
    """Pollable status snapshot of one operation kind."""
    kind: OperationKind
    state: OperationState = OperationState.IDLE
    progress: int = 0
    status_text: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    step: str = ""
    exit_code: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.state == OperationState.RUNNING

    @property
    def active(self) -> bool:
        return self.running

    def copy(self) -> "OperationStatus":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the status to a JSON-ready dictionary."""
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "running": self.running,
            "active": self.active,
            "progress": self.progress,
            "status": self.status_text,
            "step": self.step,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "exit_code": self.exit_code,
        }


@dataclass
class ArrayDiskUsage:
    """Usage snapshot of one kernel-array data disk."""
    slot: int
    mount_point: str
    mounted: bool
    total_bytes: int = 0
    used_bytes: int = 0
    free_bytes: int = 0

    @property
    def usage_percent(self) -> float:
        """Calculate usage percentage."""
        if self.total_bytes == 0:
            return 0.0
        return (self.used_bytes / self.total_bytes) * 100


@dataclass
class ArrayStatus:
    """Kernel-array status derived from the array tool on each request."""
    installed: bool
    configured: bool
    state: str
    parity_valid: Optional[bool] = None
    parity_disk: Optional[str] = None
    data_disk_count: int = 0
    disks: List[ArrayDiskUsage] = field(default_factory=list)
    last_check: Optional[str] = None
    checking: bool = False
    check_progress: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installed": self.installed,
            "configured": self.configured,
            "status": self.state,
            "parity_valid": self.parity_valid,
            "parity_disk": self.parity_disk,
            "data_disks": self.data_disk_count,
            "disks": [
                {
                    "slot": disk.slot,
                    "mount_point": disk.mount_point,
                    "mounted": disk.mounted,
                    "total": disk.total_bytes,
                    "used": disk.used_bytes,
                    "available": disk.free_bytes,
                    "usage_percent": round(disk.usage_percent, 2),
                }
                for disk in self.disks
            ],
            "last_check": self.last_check,
            "checking": self.checking,
            "check_progress": self.check_progress,
        }
