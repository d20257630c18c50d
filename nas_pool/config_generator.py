"""
Rendering of SnapRAID, fstab and Samba configuration text.

Every function here is pure: no clock, no filesystem, no commands. The
same inputs always render byte-identical text, so regenerating a config
for an unchanged pool never produces a spurious diff.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config_manager import StorageSettings
from .models import (
    DiskRole, DiskRoleAssignment, DiskSpec, MountedDisk, ShareMode, StorageBackend, partition_name
)


FSTAB_BEGIN_MARKER = "# nas-pool storage configuration"
FSTAB_END_MARKER = "# end nas-pool storage configuration"

SNAPRAID_EXCLUDES = [
    "*.unrecoverable",
    "/tmp/",
    "/lost+found/",
    ".Thumbs.db",
    ".DS_Store",
    "*.!sync",
    ".AppleDouble",
    "._AppleDouble",
    ".Spotlight-V100",
    ".TemporaryItems",
    ".Trashes",
    ".fseventsd",
]

# Union mount for the parity pool: new files go to the branch with most free space
UNION_MOUNT_OPTIONS = [
    "defaults",
    "allow_other",
    "nonempty",
    "use_ino",
    "cache.files=partial",
    "dropcacheonclose=true",
    "category.create=mfs",
]

# Union mount used by the kernel-array "merged" share mode
ARRAY_UNION_MOUNT_OPTIONS = [
    "defaults",
    "allow_other",
    "use_ino",
    "category.create=mfs",
]

SHARE_CATEGORIES = ["Media", "Documents", "Backups", "Downloads", "Photos", "Projects"]

SAMBA_GLOBAL_SECTION = """[global]
   workgroup = WORKGROUP
   server string = NAS
   security = user
   map to guest = Bad User
   server min protocol = SMB2
   client min protocol = SMB2
"""


@dataclass(frozen=True)
class GeneratedConfig:
    """Rendered config text and the mount points it expects."""
    backend: StorageBackend
    text: str
    mount_points: List[str] = field(default_factory=list)
    union_sources: List[str] = field(default_factory=list)


def union_mount_options() -> str:
    return ",".join(UNION_MOUNT_OPTIONS)


def array_union_mount_options() -> str:
    return ",".join(ARRAY_UNION_MOUNT_OPTIONS)


def build_assignment(disks: Sequence[DiskSpec], settings: StorageSettings) -> DiskRoleAssignment:
    """
    Partition a validated plan by role and compute mount points.

    Data disks mount at <mount_base>/diskN, parity disks at
    <parity_mount_prefix>N and cache disks at <mount_base>/cacheN, each
    numbered from 1 in submission order. Disks with role 'none' are left out.
    """
    data: List[MountedDisk] = []
    parity: List[MountedDisk] = []
    cache: List[MountedDisk] = []

    for disk in disks:
        if disk.role == DiskRole.DATA:
            number = len(data) + 1
            data.append(MountedDisk(disk.id, disk.role, partition_name(disk.id),
                                    f"{settings.mount_base}/disk{number}", number))
        elif disk.role == DiskRole.PARITY:
            number = len(parity) + 1
            parity.append(MountedDisk(disk.id, disk.role, partition_name(disk.id),
                                      f"{settings.parity_mount_prefix}{number}", number))
        elif disk.role == DiskRole.CACHE:
            number = len(cache) + 1
            cache.append(MountedDisk(disk.id, disk.role, partition_name(disk.id),
                                     f"{settings.mount_base}/cache{number}", number))

    return DiskRoleAssignment(data=data, parity=parity, cache=cache)


def generate_snapraid_config(assignment: DiskRoleAssignment) -> Optional[str]:
    """
    Render snapraid.conf for a parity pool.

    Returns:
        Config text, or None when the pool has no parity disks (parity
        protection disabled)
    """
    if not assignment.parity:
        return None

    lines = [
        "# SnapRAID configuration",
        "# Generated by nas-pool, changes will be overwritten",
        "",
        "# Parity files",
    ]

    for index, disk in enumerate(assignment.parity):
        if index == 0:
            lines.append(f"parity {disk.mount_point}/snapraid.parity")
        else:
            lines.append(f"{index + 1}-parity {disk.mount_point}/snapraid.parity")

    lines.append("")
    lines.append("# Content files (stored on data disks)")
    for disk in assignment.data:
        lines.append(f"content {disk.mount_point}/.snapraid/snapraid.content")

    lines.append("")
    lines.append("# Data disks")
    for disk in assignment.data:
        lines.append(f"disk d{disk.number} {disk.mount_point}")

    lines.append("")
    lines.append("# Exclude files")
    for pattern in SNAPRAID_EXCLUDES:
        lines.append(f"exclude {pattern}")

    return "\n".join(lines) + "\n"


def generate_fstab_block(assignment: DiskRoleAssignment,
                         uuids: Dict[str, str],
                         pool_mount_point: str,
                         union_options: Optional[str] = None) -> str:
    """
    Render the marker-bracketed fstab block for a parity pool.

    Args:
        assignment: Role assignment with mount points
        uuids: Partition name -> filesystem UUID; partitions without a UUID
            are referenced by device path
        pool_mount_point: Union mount target
        union_options: MergerFS options (default: UNION_MOUNT_OPTIONS)

    Returns:
        fstab lines between FSTAB_BEGIN_MARKER and FSTAB_END_MARKER
    """
    lines = [FSTAB_BEGIN_MARKER]
    for disk in assignment.mounted:
        uuid = uuids.get(disk.partition)
        source = f"UUID={uuid}" if uuid else disk.partition_path
        lines.append(f"{source} {disk.mount_point} ext4 defaults,nofail 0 2")

    if assignment.data:
        sources = ":".join(assignment.data_mount_points)
        options = union_options or union_mount_options()
        lines.append(f"{sources} {pool_mount_point} fuse.mergerfs {options},nofail 0 0")

    lines.append(FSTAB_END_MARKER)
    return "\n".join(lines) + "\n"


def replace_marked_block(existing: str, block: str) -> str:
    """
    Replace any previously generated block in fstab text.

    Lines between the begin and end markers (inclusive) are dropped and the
    new block is appended once, so reconfiguring never duplicates entries.
    An unterminated block is dropped up to the next blank line.
    """
    kept: List[str] = []
    inside = False
    for line in existing.splitlines():
        stripped = line.strip()
        if not inside and stripped == FSTAB_BEGIN_MARKER:
            inside = True
            continue
        if inside:
            if stripped == FSTAB_END_MARKER or stripped == "":
                inside = False
            continue
        kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()

    text = "\n".join(kept)
    if text:
        text += "\n\n"
    return text + block


def _share_section(name: str, path: str, group: str) -> str:
    return (
        f"[{name}]\n"
        f"   path = {path}\n"
        "   browseable = yes\n"
        "   read only = no\n"
        f"   valid users = @{group}\n"
        "   create mask = 0664\n"
        "   directory mask = 0775\n"
        f"   force group = {group}\n"
    )


def share_names(disk_count: int, share_mode: ShareMode) -> List[str]:
    """Share names for each disk slot, in slot order."""
    if share_mode == ShareMode.MERGED:
        return ["Storage"]
    if share_mode == ShareMode.CATEGORIES:
        return [
            SHARE_CATEGORIES[i] if i < len(SHARE_CATEGORIES) else f"Disk{i + 1}"
            for i in range(disk_count)
        ]
    return [f"Disk{i + 1}" for i in range(disk_count)]


def generate_samba_config(disk_count: int,
                          share_mode: ShareMode,
                          mount_prefix: str,
                          pool_mount_point: str,
                          group: str = "sambashare") -> str:
    """
    Render smb.conf for kernel-array disks.

    individual: one [DiskN] share per data disk.
    merged: a single [Storage] share over the union mount.
    categories: named shares from SHARE_CATEGORIES, then DiskN.
    """
    sections = [SAMBA_GLOBAL_SECTION]
    names = share_names(disk_count, share_mode)

    if share_mode == ShareMode.MERGED:
        sections.append(_share_section(names[0], pool_mount_point, group))
    else:
        for slot, name in enumerate(names, start=1):
            sections.append(_share_section(name, f"{mount_prefix}{slot}", group))

    return "\n".join(sections)


def array_mount_points(disk_count: int, mount_prefix: str) -> List[str]:
    return [f"{mount_prefix}{slot}" for slot in range(1, disk_count + 1)]


def generate_pool_plan(assignment: DiskRoleAssignment,
                       backend: StorageBackend,
                       settings: StorageSettings,
                       share_mode: ShareMode = ShareMode.INDIVIDUAL) -> GeneratedConfig:
    """
    Render the backend-specific config and the mount points it plans.

    For the parity pool the text is snapraid.conf (empty when parity is
    disabled). The kernel array keeps its own metadata, so its text is the
    share definition for the chosen share mode.
    """
    if backend == StorageBackend.PARITY_POOL:
        return GeneratedConfig(
            backend=backend,
            text=generate_snapraid_config(assignment) or "",
            mount_points=[disk.mount_point for disk in assignment.mounted],
            union_sources=assignment.data_mount_points,
        )

    disk_count = len(assignment.data)
    mount_points = array_mount_points(disk_count, settings.nonraid_mount_prefix)
    return GeneratedConfig(
        backend=backend,
        text=generate_samba_config(disk_count, share_mode, settings.nonraid_mount_prefix,
                                   settings.pool_mount_point, settings.share_group),
        mount_points=mount_points,
        union_sources=mount_points if share_mode == ShareMode.MERGED else [],
    )
