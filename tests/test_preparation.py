"""Unit tests for disk preparation."""

import unittest
from unittest.mock import Mock

from nas_pool.errors import ConfigurationError
from nas_pool.models import DiskRole, DiskSpec
from nas_pool.preparation import (
    DiskPreparationExecutor, ErrorPolicy, filesystem_label
)
from nas_pool.system_executor import CommandType, SystemCommandExecutor


def fail_mkfs_for(partition):
    def run(command_type, args, timeout=None):
        if command_type == CommandType.MKFS_EXT4 and args[-1] == f"/dev/{partition}":
            return False, "", "mkfs.ext4: Device or resource busy"
        return True, "", ""
    return run


class TestDiskPreparationExecutor(unittest.TestCase):
    """Test cases for DiskPreparationExecutor."""

    def setUp(self):
        self.executor = SystemCommandExecutor(dry_run=False)
        self.executor.run = Mock(return_value=(True, "", ""))
        self.sleep = Mock()
        self.preparer = DiskPreparationExecutor(self.executor, settle_seconds=2.0, sleep=self.sleep)

    def test_prepare_disk_command_sequence(self):
        self.preparer.prepare_disk(DiskSpec("sda", DiskRole.DATA, True))

        calls = [call.args for call in self.executor.run.call_args_list]
        self.assertEqual(calls, [
            (CommandType.PARTED, ['-s', '/dev/sda', 'mklabel', 'gpt']),
            (CommandType.PARTED, ['-s', '/dev/sda', 'mkpart', 'primary', 'ext4', '0%', '100%']),
            (CommandType.PARTPROBE, ['/dev/sda']),
            (CommandType.MKFS_EXT4, ['-F', '-L', 'data_sda', '/dev/sda1']),
        ])
        self.sleep.assert_called_once_with(2.0)

    def test_nvme_partition_and_label(self):
        self.preparer.prepare_disk(DiskSpec("nvme0n1", DiskRole.PARITY, True))
        last = self.executor.run.call_args_list[-1].args
        self.assertEqual(last, (CommandType.MKFS_EXT4, ['-F', '-L', 'parity_nvme0n1', '/dev/nvme0n1p1']))

    def test_label_truncated(self):
        self.assertEqual(len(filesystem_label(DiskSpec("nvme100n10", DiskRole.PARITY))), 16)

    def test_skips_disks_without_format(self):
        result = self.preparer.prepare([DiskSpec("sda", DiskRole.DATA, False)])
        self.executor.run.assert_not_called()
        self.assertEqual(result.log, [])
        self.assertEqual(result.prepared, [])

    def test_one_of_three_failures_continues(self):
        self.executor.run.side_effect = fail_mkfs_for("sdb1")
        disks = [
            DiskSpec("sda", DiskRole.DATA, True),
            DiskSpec("sdb", DiskRole.DATA, True),
            DiskSpec("sdc", DiskRole.PARITY, True),
        ]

        result = self.preparer.prepare(disks)

        self.assertEqual(result.prepared, ["sda", "sdc"])
        self.assertEqual(result.failed, ["sdb"])
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(any(line.startswith("Warning: Format failed for sdb:") for line in result.log))
        self.assertIn("Formatted /dev/sda1 as ext4", result.log)
        self.assertIn("Formatted /dev/sdc1 as ext4", result.log)

    def test_abort_policy_raises_with_partial_log(self):
        self.executor.run.side_effect = fail_mkfs_for("sda1")
        preparer = DiskPreparationExecutor(self.executor, policy=ErrorPolicy.ABORT_ON_ERROR,
                                           settle_seconds=0, sleep=self.sleep)

        with self.assertRaises(ConfigurationError) as ctx:
            preparer.prepare([DiskSpec("sda", DiskRole.DATA, True), DiskSpec("sdb", DiskRole.DATA, True)])

        self.assertIn("Formatting /dev/sda...", ctx.exception.results)
        self.assertNotIn("Formatting /dev/sdb...", ctx.exception.results)
        self.sleep.assert_not_called()

    def test_rejected_argument_becomes_warning(self):
        self.executor.run.side_effect = ValueError("Argument not allowed for parted: x")
        result = self.preparer.prepare([DiskSpec("sda", DiskRole.DATA, True)])
        self.assertEqual(result.failed, ["sda"])
        self.assertIn("Argument not allowed", result.warnings[0].detail)


if __name__ == '__main__':
    unittest.main()
