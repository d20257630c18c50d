"""Unit tests for PoolService."""

import json
import os
import shutil
import tempfile
import unittest
from collections import namedtuple
from unittest.mock import Mock, patch

from nas_pool.backend import BackendSelector
from nas_pool.config_generator import FSTAB_BEGIN_MARKER
from nas_pool.errors import (
    BackendMismatchError, ConfigurationError, ConflictError, ValidationError
)
from nas_pool.models import DiskRole, OperationKind, OperationState, StorageBackend
from nas_pool.pool_service import PoolService
from nas_pool.system_executor import CommandType, SystemCommandExecutor

from fakes import FakeProcess, make_settings


Partition = namedtuple("Partition", "device mountpoint fstype opts")
Usage = namedtuple("Usage", "total used free percent")


def data(disk_id, fmt=True):
    return {"id": disk_id, "role": "data", "format": fmt}


def parity(disk_id, fmt=True):
    return {"id": disk_id, "role": "parity", "format": fmt}


@patch('nas_pool.mount_manager.os.path.ismount', return_value=False)
class TestConfigurePool(unittest.TestCase):
    """Test cases for PoolService.configure_pool."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = make_settings(self.temp_dir)
        with open(self.settings.fstab_path, 'w') as f:
            f.write("UUID=root / ext4 defaults 0 1\n")

        self.executor = SystemCommandExecutor(dry_run=False)
        self.executor.run = Mock(side_effect=self.run_command)
        self.executor.spawn = Mock(return_value=FakeProcess(["100% completed\n"], returncode=0))
        self.failures = {}

        self.backend = Mock(spec=BackendSelector)
        self.backend.require.return_value = StorageBackend.PARITY_POOL
        self.service = PoolService(self.settings, executor=self.executor, backend_selector=self.backend)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_command(self, command_type, args, timeout=None):
        failure = self.failures.get((command_type, args[-1])) or self.failures.get(command_type)
        if failure:
            return False, "", failure
        if command_type == CommandType.BLKID:
            return True, f"uuid-{args[-1].rsplit('/', 1)[-1]}\n", ""
        return True, "", ""

    def commands(self, command_type):
        return [call.args[1] for call in self.executor.run.call_args_list if call.args[0] == command_type]

    def read(self, path):
        with open(path) as f:
            return f.read()

    def test_one_data_one_parity(self, _ismount):
        result = self.service.configure_pool([data("sda"), parity("sdb")])

        snapraid = self.read(self.settings.snapraid_config_path).splitlines()
        parity_lines = [line for line in snapraid if line.startswith("parity ")]
        self.assertEqual(parity_lines, ["parity /mnt/parity1/snapraid.parity"])
        self.assertIn("disk d1 /mnt/disks/disk1", snapraid)

        self.assertIn("SnapRAID configuration created", result.results)
        self.assertIn("MergerFS pool mounted at /mnt/storage", result.results)
        self.assertIn(f"Updated {self.settings.fstab_path} for persistence", result.results)
        self.assertEqual(result.results[-1], "Starting initial SnapRAID sync (this may take a while)...")
        self.assertEqual(result.warnings, [])

        fstab = self.read(self.settings.fstab_path)
        self.assertIn("UUID=uuid-sda1 /mnt/disks/disk1 ext4 defaults,nofail 0 2", fstab)
        self.assertTrue(fstab.startswith("UUID=root / ext4 defaults 0 1\n"))

        with open(self.settings.data_file_path) as f:
            state = json.load(f)
        self.assertTrue(state["poolConfigured"])
        self.assertEqual(state["storageConfig"], [{"id": "sda", "role": "data"}, {"id": "sdb", "role": "parity"}])

        self.executor.spawn.assert_called_once_with(
            CommandType.SNAPRAID, ['sync', '-c', self.settings.snapraid_config_path, '-v']
        )
        final = self.service.supervisor.wait(OperationKind.SYNC, timeout=5)
        self.assertEqual(final.state, OperationState.COMPLETED)

        payload = result.to_dict()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["pool_mount"], "/mnt/storage")

    def test_one_of_three_preparations_fails(self, _ismount):
        self.failures[(CommandType.MKFS_EXT4, "/dev/sdb1")] = "mkfs.ext4: Device or resource busy"

        result = self.service.configure_pool([data("sda"), data("sdb"), parity("sdc")], start_sync=False)

        self.assertEqual([disk.id for disk in result.disks], ["sda", "sdc"])
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("Warning: Format failed for sdb:"))
        self.assertIn("Formatted /dev/sda1 as ext4", result.results)
        self.assertIn("Formatted /dev/sdc1 as ext4", result.results)

        mounted = [args[0] for args in self.commands(CommandType.MOUNT)]
        self.assertEqual(mounted, ["/dev/sda1", "/dev/sdc1"])
        self.assertNotIn("disk d2", self.read(self.settings.snapraid_config_path))
        self.executor.spawn.assert_not_called()

    def test_all_data_disks_fail(self, _ismount):
        self.failures[CommandType.MKFS_EXT4] = "mkfs.ext4: bad superblock"

        with self.assertRaises(ConfigurationError) as ctx:
            self.service.configure_pool([data("sda"), parity("sdb")])

        self.assertEqual(ctx.exception.message, "No data disks could be prepared")
        self.assertTrue(ctx.exception.results)
        self.assertEqual(self.commands(CommandType.MOUNT), [])

    def test_invalid_plan_has_no_side_effects(self, _ismount):
        for plan in ([parity("sda")], [data("sda"), data("sda")], [{"id": "sda1", "role": "data"}]):
            with self.subTest(plan=plan):
                with self.assertRaises(ValidationError):
                    self.service.configure_pool(plan)
        self.executor.run.assert_not_called()
        self.executor.spawn.assert_not_called()
        self.assertFalse(os.path.exists(self.settings.snapraid_config_path))

    def test_wrong_backend(self, _ismount):
        self.backend.require.side_effect = BackendMismatchError("parity_pool", "kernel_array")
        with self.assertRaises(BackendMismatchError):
            self.service.configure_pool([data("sda")])
        self.executor.run.assert_not_called()

    def test_running_sync_conflicts(self, _ismount):
        self.service.supervisor.tracker(OperationKind.SYNC).begin()
        with self.assertRaises(ConflictError):
            self.service.configure_pool([data("sda"), parity("sdb")])
        self.executor.run.assert_not_called()

    def test_mount_failure_aborts_with_results(self, _ismount):
        self.failures[(CommandType.MOUNT, "/mnt/parity1")] = "mount: wrong fs type"

        with self.assertRaises(ConfigurationError) as ctx:
            self.service.configure_pool([data("sda"), parity("sdb")])

        self.assertIn("Mounted /dev/sda1 at /mnt/disks/disk1", ctx.exception.results)
        self.assertIn("Formatted /dev/sdb1 as ext4", ctx.exception.results)
        self.assertEqual(self.commands(CommandType.MERGERFS), [])
        self.assertNotIn(FSTAB_BEGIN_MARKER, self.read(self.settings.fstab_path))
        self.assertFalse(self.service.get_storage_config().configured)
        self.executor.spawn.assert_not_called()

    def test_rejected_pool_path_aborts_with_results(self, _ismount):
        self.settings.pool_mount_point = "/mnt/my storage"

        def validated(command_type, args, timeout=None):
            self.executor.build_command(command_type, args)
            return self.run_command(command_type, args, timeout)
        self.executor.run.side_effect = validated

        with self.assertRaises(ConfigurationError) as ctx:
            self.service.configure_pool([data("sda"), parity("sdb")])

        self.assertIn("Failed to create /mnt/my storage", ctx.exception.message)
        self.assertIn("Mounted /dev/sda1 at /mnt/disks/disk1", ctx.exception.results)
        self.assertIn("SnapRAID configuration created", ctx.exception.results)
        self.assertEqual(self.commands(CommandType.MERGERFS), [])
        self.assertFalse(self.service.get_storage_config().configured)
        self.executor.spawn.assert_not_called()

    def test_data_only_pool_skips_snapraid(self, _ismount):
        result = self.service.configure_pool([data("sda", fmt=False)])

        self.assertIn("SnapRAID skipped (no parity disks configured)", result.results)
        self.assertFalse(os.path.exists(self.settings.snapraid_config_path))
        self.assertEqual(self.commands(CommandType.MKFS_EXT4), [])
        self.assertIsNone(result.sync)
        self.executor.spawn.assert_not_called()

    def test_permission_failure_is_a_warning(self, _ismount):
        self.failures[CommandType.CHOWN] = "chown: invalid group"

        result = self.service.configure_pool([data("sda"), parity("sdb")], start_sync=False)

        self.assertEqual(result.warnings, ["Could not set Samba permissions"])
        self.assertTrue(self.service.get_storage_config().configured)

    def test_reconfigure_replaces_fstab_block(self, _ismount):
        self.service.configure_pool([data("sda"), parity("sdb")], start_sync=False)
        self.service.configure_pool([data("sda", fmt=False), data("sdc"), parity("sdb", fmt=False)],
                                    start_sync=False)

        fstab = self.read(self.settings.fstab_path)
        self.assertEqual(fstab.count(FSTAB_BEGIN_MARKER), 1)
        self.assertIn("/mnt/disks/disk2", fstab)
        self.assertIn("disk d2 /mnt/disks/disk2", self.read(self.settings.snapraid_config_path))

    def test_second_sync_conflict_is_a_warning(self, _ismount):
        with patch.object(self.service.snapraid, 'start_sync',
                          side_effect=ConflictError("sync", 40)):
            result = self.service.configure_pool([data("sda"), parity("sdb")])
        self.assertIn("Sync already in progress", result.warnings)
        self.assertIsNone(result.sync)


class TestPoolStatus(unittest.TestCase):
    """Test cases for pool status and stored configuration."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = make_settings(self.temp_dir)
        self.executor = SystemCommandExecutor(dry_run=False)
        self.executor.run = Mock(return_value=(True, "", ""))
        self.service = PoolService(self.settings, executor=self.executor,
                                   backend_selector=Mock(spec=BackendSelector))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('nas_pool.pool_service.psutil.disk_partitions', return_value=[])
    def test_unconfigured(self, _partitions):
        status = self.service.get_pool_status()
        self.assertFalse(status.configured)
        self.assertFalse(status.running)
        self.assertIsNone(status.last_sync)
        self.assertEqual(status.to_dict()["pool_size"], 0)

    @patch('nas_pool.pool_service.psutil.disk_usage', return_value=Usage(4000, 1000, 3000, 25.0))
    @patch('nas_pool.pool_service.psutil.disk_partitions')
    def test_running_pool(self, partitions, _usage):
        partitions.return_value = [
            Partition("/dev/sda1", "/mnt/disks/disk1", "ext4", "rw"),
            Partition("disk1:disk2", "/mnt/storage", "fuse.mergerfs", "rw"),
        ]
        with open(self.settings.snapraid_config_path, 'w') as f:
            f.write("parity /mnt/parity1/snapraid.parity\n"
                    "content /mnt/disks/disk1/.snapraid/snapraid.content\n"
                    "disk d1 /mnt/disks/disk1\n")
        with open(self.settings.sync_log_path, 'w') as f:
            f.write("Syncing...\n=== SnapRAID Sync Finished: Wed May  1 03:00:00 UTC 2024 ===\n")

        payload = self.service.get_pool_status().to_dict()

        self.assertTrue(payload["configured"])
        self.assertTrue(payload["running"])
        self.assertEqual(payload["pool_size"], 4000)
        self.assertEqual(payload["pool_free"], 3000)
        self.assertEqual(payload["last_sync"], "Wed May  1 03:00:00 UTC 2024")
        self.assertFalse(payload["pool_configured"])

    @patch('nas_pool.pool_service.psutil.disk_partitions')
    def test_plain_mount_is_not_a_pool(self, partitions):
        partitions.return_value = [Partition("/dev/sdz1", "/mnt/storage", "ext4", "rw")]
        self.assertFalse(self.service.get_pool_status().running)

    def test_save_storage_config(self):
        specs = self.service.save_storage_config([
            {"id": "sda", "role": "data"},
            {"id": "/dev/sdb", "role": "none"},
        ])

        self.assertEqual([spec.role for spec in specs], [DiskRole.DATA, DiskRole.NONE])
        stored = self.service.get_storage_config()
        self.assertEqual([disk.id for disk in stored.disks], ["sda", "sdb"])
        self.assertFalse(stored.configured)
        self.executor.run.assert_not_called()

        with open(self.settings.audit_log_path) as f:
            self.assertEqual(json.loads(f.readline())["event"], "STORAGE_CONFIG")

    def test_save_storage_config_rejects_bad_role(self):
        with self.assertRaises(ValidationError):
            self.service.save_storage_config([{"id": "sda", "role": "mirror"}])
        self.assertFalse(os.path.exists(self.settings.data_file_path))


if __name__ == '__main__':
    unittest.main()
