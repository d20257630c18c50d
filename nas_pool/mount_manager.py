"""Mounting of pool disks, the union filesystem and boot-time persistence."""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .config_generator import replace_marked_block
from .errors import ConfigurationError, SubprocessFailure
from .models import DiskRole, DiskRoleAssignment
from .preparation import ErrorPolicy
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)


class PoolMountManager:
    """Creates mount points, mounts disks and the union pool, and persists them in fstab."""

    def __init__(self,
                 executor: SystemCommandExecutor,
                 policy: ErrorPolicy = ErrorPolicy.ABORT_ON_ERROR,
                 share_group: str = "sambashare"):
        """
        Args:
            executor: Command executor for mount, mergerfs, nmdctl and friends
            policy: Behaviour when mounting a single disk fails
            share_group: Group that owns pool files for network shares
        """
        self.executor = executor
        self.policy = policy
        self.share_group = share_group

    def mount_assignment(self, assignment: DiskRoleAssignment,
                         results: Optional[List[str]] = None) -> List[str]:
        """
        Create mount points and mount every disk of an assignment.

        Data disks also get a .snapraid directory for content files. A
        mount point that is already mounted is left alone.

        Args:
            assignment: Disks with computed mount points
            results: Log to append to (shared with the caller's request log)

        Returns:
            The results log

        Raises:
            ConfigurationError: If a directory cannot be created, or a mount
                fails under ABORT_ON_ERROR
        """
        results = results if results is not None else []

        for disk in assignment.mounted:
            self.make_directory(disk.mount_point, results)

            suffix = "" if disk.role == DiskRole.DATA else f" ({disk.role.value})"
            if os.path.ismount(disk.mount_point):
                results.append(f"{disk.mount_point} already mounted{suffix}")
            else:
                success, _stdout, stderr = self._run(
                    CommandType.MOUNT, [disk.partition_path, disk.mount_point]
                )
                if not success:
                    message = f"Failed to mount {disk.partition_path} at {disk.mount_point}: {stderr.strip()}"
                    if self.policy == ErrorPolicy.ABORT_ON_ERROR:
                        logger.error(message)
                        raise ConfigurationError(message, results=results)
                    logger.warning(message)
                    results.append(f"Warning: {message}")
                    continue
                results.append(f"Mounted {disk.partition_path} at {disk.mount_point}{suffix}")

            if disk.role == DiskRole.DATA:
                self.make_directory(f"{disk.mount_point}/.snapraid", results)

        return results

    def make_directory(self, path: str, results: Optional[List[str]] = None) -> None:
        """
        Create a directory (and parents) with privileges.

        Raises:
            ConfigurationError: If mkdir fails
        """
        success, _stdout, stderr = self._run(CommandType.MKDIR, ['-p', path])
        if not success:
            raise ConfigurationError(f"Failed to create {path}: {stderr.strip()}", results=results)

    def mount_union(self, sources: Sequence[str], target: str, options: str,
                    results: Optional[List[str]] = None) -> List[str]:
        """
        Mount a MergerFS union of the source directories at target.

        Any previous union at target is unmounted first; an unmount failure
        only means nothing was mounted there.

        Raises:
            ConfigurationError: If there are no sources or mergerfs fails
        """
        results = results if results is not None else []
        if not sources:
            raise ConfigurationError("Union mount requires at least one source", results=results)

        self.make_directory(target, results)
        if os.path.ismount(target):
            self._run(CommandType.UMOUNT, [target])

        success, _stdout, stderr = self._run(
            CommandType.MERGERFS, ['-o', options, ':'.join(sources), target]
        )
        if not success:
            message = f"Failed to mount MergerFS pool at {target}: {stderr.strip()}"
            logger.error(message)
            raise ConfigurationError(message, results=results)

        logger.info(f"Mounted MergerFS pool at {target}")
        results.append(f"MergerFS pool mounted at {target}")
        return results

    def apply_share_permissions(self, path: str, results: Optional[List[str]] = None) -> bool:
        """
        Give the share group ownership of path with setgid group-writable bits.

        Failure is reported as a warning; the pool stays usable.
        """
        results = results if results is not None else []
        success, _stdout, stderr = self._run(CommandType.CHOWN, ['-R', f":{self.share_group}", path])
        if success:
            success, _stdout, stderr = self._run(CommandType.CHMOD, ['-R', '2775', path])

        if success:
            results.append("Samba permissions configured")
            return True

        logger.warning(f"Could not set share permissions on {path}: {stderr.strip()}")
        results.append("Warning: Could not set Samba permissions")
        return False

    def resolve_uuids(self, partitions: Sequence[str]) -> Dict[str, str]:
        """
        Look up filesystem UUIDs with blkid.

        Returns:
            Partition name -> UUID, for partitions blkid could resolve
        """
        uuids = {}
        for partition in partitions:
            success, stdout, _stderr = self._run(
                CommandType.BLKID, ['-s', 'UUID', '-o', 'value', f"/dev/{partition}"]
            )
            value = stdout.strip()
            if success and value and value != "DRY RUN":
                uuids[partition] = value
            else:
                logger.warning(f"No UUID found for /dev/{partition}, using device path in fstab")
        return uuids

    def update_fstab(self, block: str, fstab_path: str = "/etc/fstab", backup: bool = True) -> str:
        """
        Install a generated block into fstab, replacing any earlier one.

        Args:
            block: Marker-bracketed fstab block
            fstab_path: fstab location
            backup: Copy the current file aside first

        Returns:
            The new fstab content

        Raises:
            ConfigurationError: If fstab cannot be read or written
        """
        try:
            existing = ""
            if os.path.exists(fstab_path):
                with open(fstab_path, 'r') as f:
                    existing = f.read()
                if backup:
                    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                    backup_path = f"{fstab_path}.backup_{timestamp}"
                    shutil.copy2(fstab_path, backup_path)
                    logger.info(f"Created fstab backup: {backup_path}")

            content = replace_marked_block(existing, block)
            self.write_config_file(fstab_path, content)
        except OSError as e:
            logger.error(f"Error updating fstab: {e}")
            raise ConfigurationError(f"Failed to update fstab: {e}") from e

        logger.info(f"Updated {fstab_path} for persistence")
        return content

    def write_config_file(self, path: str, content: str) -> None:
        """
        Atomically replace a config file.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        temp_path = f"{path}.tmp"
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w') as f:
                f.write(content)
            os.replace(temp_path, path)
        except OSError as e:
            logger.error(f"Error writing {path}: {e}")
            raise ConfigurationError(f"Failed to write {path}: {e}") from e
        logger.info(f"Wrote {path}")

    def array_start(self) -> None:
        self._nmdctl('start')

    def array_mount(self) -> None:
        self._nmdctl('mount')

    def array_unmount(self) -> None:
        self._nmdctl('unmount')

    def array_stop(self) -> None:
        self._nmdctl('stop')

    def restart_samba(self) -> None:
        """
        Restart smbd so a rewritten smb.conf takes effect.

        Raises:
            SubprocessFailure: If systemctl fails
        """
        success, _stdout, stderr = self._run(CommandType.SYSTEMCTL, ['restart', 'smbd'])
        if not success:
            raise SubprocessFailure("systemctl restart smbd", None, stderr)

    def _run(self, command_type: CommandType, args: List[str]) -> Tuple[bool, str, str]:
        # Arguments the executor refuses to pass count as a failed command
        try:
            return self.executor.run(command_type, args)
        except ValueError as e:
            logger.error(f"Rejected {command_type.value} command: {e}")
            return False, "", str(e)

    def _nmdctl(self, action: str) -> None:
        success, _stdout, stderr = self._run(CommandType.NMDCTL, [action])
        if not success:
            raise SubprocessFailure(f"nmdctl {action}", None, stderr)
        logger.info(f"nmdctl {action} completed")
