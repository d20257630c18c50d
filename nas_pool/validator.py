"""Validation of requested disk role plans."""

import re
from typing import Any, Iterable, List, Union

from .errors import ValidationError
from .models import DiskRole, DiskSpec, StorageBackend


MAX_DISKS = 20

# Whole physical disks only: no partitions, loop, ram or mapper devices.
PHYSICAL_DISK_PATTERNS = (
    re.compile(r'^sd[a-z]{1,2}$'),
    re.compile(r'^hd[a-z]$'),
    re.compile(r'^vd[a-z]$'),
    re.compile(r'^xvd[a-z]$'),
    re.compile(r'^nvme[0-9]+n[0-9]+$'),
    re.compile(r'^mmcblk[0-9]+$'),
)

VALID_ROLES = {role.value for role in DiskRole}


def is_physical_disk(disk_id: str) -> bool:
    """Return True if disk_id names a whole physical disk."""
    return any(pattern.match(disk_id) for pattern in PHYSICAL_DISK_PATTERNS)


def _normalize_id(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Invalid disk ID in configuration", rule="disk-id")
    disk_id = raw.strip()
    if disk_id.startswith("/dev/"):
        disk_id = disk_id[len("/dev/"):]
    return disk_id


def _coerce(entry: Union[DiskSpec, dict]) -> DiskSpec:
    if isinstance(entry, DiskSpec):
        disk_id = _normalize_id(entry.id)
        role = entry.role
        fmt = entry.format
    elif isinstance(entry, dict):
        disk_id = _normalize_id(entry.get("id"))
        raw_role = entry.get("role")
        if isinstance(raw_role, DiskRole):
            role = raw_role
        elif raw_role in VALID_ROLES:
            role = DiskRole(raw_role)
        else:
            raise ValidationError(f"Invalid role for {disk_id}: {raw_role!r}", rule="role", disk=disk_id)
        fmt = entry.get("format") is True
    else:
        raise ValidationError("Invalid disk entry in configuration", rule="shape")

    if not is_physical_disk(disk_id):
        raise ValidationError(f"Not a physical disk: {disk_id}", rule="disk-id", disk=disk_id)
    return DiskSpec(id=disk_id, role=role, format=fmt)


def validate_disk_plan(disks: Iterable[Union[DiskSpec, dict]],
                       backend: StorageBackend) -> List[DiskSpec]:
    """
    Validate a disk role plan for a backend.

    Rules are checked in a fixed order and the first violation is raised;
    nothing is accepted partially.

    Args:
        disks: DiskSpec objects or request dicts ({id, role, format})
        backend: Active storage backend

    Returns:
        Normalized list of DiskSpec

    Raises:
        ValidationError: On the first violated rule
    """
    if disks is None or isinstance(disks, (str, bytes, dict)):
        raise ValidationError("No disks provided", rule="shape")
    entries = list(disks)
    if not entries:
        raise ValidationError("No disks provided", rule="shape")
    if len(entries) > MAX_DISKS:
        raise ValidationError(f"At most {MAX_DISKS} disks can be configured", rule="shape")

    specs = [_coerce(entry) for entry in entries]

    seen = set()
    for spec in specs:
        if spec.id in seen:
            raise ValidationError(f"Disk listed more than once: {spec.id}", rule="duplicate", disk=spec.id)
        seen.add(spec.id)

    for spec in specs:
        if spec.role == DiskRole.NONE and spec.format:
            raise ValidationError(
                f"Disk {spec.id} has no role and cannot be formatted", rule="format-without-role", disk=spec.id
            )

    data_count = sum(1 for spec in specs if spec.role == DiskRole.DATA)
    parity_count = sum(1 for spec in specs if spec.role == DiskRole.PARITY)

    if data_count == 0:
        raise ValidationError("At least one data disk is required", rule="data-required")

    if backend == StorageBackend.KERNEL_ARRAY and parity_count != 1:
        raise ValidationError(
            f"Exactly one parity disk is required, got {parity_count}", rule="parity-count"
        )

    return specs


def validate_storage_config(entries: Any) -> List[DiskSpec]:
    """
    Check the shape of a role plan that is only being saved.

    Only ids and roles are checked; backend rules apply when the plan is
    applied through validate_disk_plan.

    Raises:
        ValidationError: If an entry has an invalid id or role
    """
    if not isinstance(entries, list):
        raise ValidationError("Invalid configuration format", rule="shape")
    return [_coerce(entry) for entry in entries]
