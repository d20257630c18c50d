"""Allow-listed system command execution for storage operations."""

import io
import logging
import re
import shlex
import subprocess
from enum import Enum
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Supported command types for validation."""
    PARTED = "parted"
    PARTPROBE = "partprobe"
    SGDISK = "sgdisk"
    MKFS_EXT4 = "mkfs.ext4"
    MKFS_XFS = "mkfs.xfs"
    MKDIR = "mkdir"
    MOUNT = "mount"
    UMOUNT = "umount"
    MERGERFS = "mergerfs"
    CHOWN = "chown"
    CHMOD = "chmod"
    BLKID = "blkid"
    SNAPRAID = "snapraid"
    NMDCTL = "nmdctl"
    SYSTEMCTL = "systemctl"


class DryRunProcess:
    """Stand-in for a spawned process when the executor runs in dry-run mode."""

    def __init__(self):
        self.stdout = io.StringIO("DRY RUN\n")
        self.returncode: Optional[int] = None
        self.pid = 0

    def wait(self, timeout: Optional[float] = None) -> int:
        self.returncode = 0
        return 0


class SystemCommandExecutor:
    """Secure system command executor with privilege escalation and validation."""

    # Allowed commands and the flags/subcommands they may receive
    ALLOWED_COMMANDS = {
        CommandType.PARTED: {
            'binary': 'parted',
            'allowed_args': {'-s', '--script', 'mklabel', 'gpt', 'mkpart', 'primary', 'ext4', '0%', '100%'},
            'requires_sudo': True
        },
        CommandType.PARTPROBE: {
            'binary': 'partprobe',
            'allowed_args': set(),
            'requires_sudo': True
        },
        CommandType.SGDISK: {
            'binary': 'sgdisk',
            'allowed_args': {'-o', '-a', '-n', '--zap-all'},
            'requires_sudo': True
        },
        CommandType.MKFS_EXT4: {
            'binary': 'mkfs.ext4',
            'allowed_args': {'-F', '-L', '--label', '-q'},
            'requires_sudo': True
        },
        CommandType.MKFS_XFS: {
            'binary': 'mkfs.xfs',
            'allowed_args': {'-f', '-L', '-q'},
            'requires_sudo': True
        },
        CommandType.MKDIR: {
            'binary': 'mkdir',
            'allowed_args': {'-p'},
            'requires_sudo': True
        },
        CommandType.MOUNT: {
            'binary': 'mount',
            'allowed_args': {'-t', '-o'},
            'requires_sudo': True
        },
        CommandType.UMOUNT: {
            'binary': 'umount',
            'allowed_args': {'-l', '-f'},
            'requires_sudo': True
        },
        CommandType.MERGERFS: {
            'binary': 'mergerfs',
            'allowed_args': {'-o'},
            'requires_sudo': True
        },
        CommandType.CHOWN: {
            'binary': 'chown',
            'allowed_args': {'-R'},
            'requires_sudo': True
        },
        CommandType.CHMOD: {
            'binary': 'chmod',
            'allowed_args': {'-R'},
            'requires_sudo': True
        },
        CommandType.BLKID: {
            'binary': 'blkid',
            'allowed_args': {'-s', 'UUID', '-o', 'value'},
            'requires_sudo': True
        },
        CommandType.SNAPRAID: {
            'binary': 'snapraid',
            'allowed_args': {
                'status', 'sync', 'scrub', 'diff', 'check',
                '-c', '--conf', '-v', '--verbose', '-p', '--plan', '-f', '--force-empty'
            },
            'requires_sudo': True
        },
        CommandType.NMDCTL: {
            'binary': 'nmdctl',
            'allowed_args': {'status', 'create', 'start', 'stop', 'mount', 'unmount', 'check', '-o', 'json', '-p'},
            'requires_sudo': True
        },
        CommandType.SYSTEMCTL: {
            'binary': 'systemctl',
            'allowed_args': {'restart', 'reload', 'smbd'},
            'requires_sudo': True
        },
    }

    # Positional values: device paths, absolute paths, colon-joined branch
    # lists, labels, numbers and option strings. No shell metacharacters.
    SAFE_ARG_PATTERN = re.compile(r'^[A-Za-z0-9_./:,=%+@-]+$')

    FILE_PATH_PATTERN = re.compile(r'^/[a-zA-Z0-9/_.-]+$')

    def __init__(self, dry_run: bool = False, use_sudo: bool = True, timeout: int = 300):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            use_sudo: Prefix privileged commands with sudo
            timeout: Default timeout in seconds for blocking commands
        """
        self.dry_run = dry_run
        self.use_sudo = use_sudo
        self.timeout = timeout

    def build_command(self, command_type: CommandType, args: List[str]) -> List[str]:
        """
        Validate arguments and build the full argv for a command.

        Raises:
            ValueError: If any argument is not allowed
        """
        command_config = self.ALLOWED_COMMANDS[command_type]
        self._validate_command_args(command_type, args)

        full_command = [command_config['binary']] + list(args)
        if command_config['requires_sudo'] and self.use_sudo:
            full_command = ['sudo'] + full_command
        return full_command

    def run(self,
            command_type: CommandType,
            args: List[str],
            timeout: Optional[int] = None) -> Tuple[bool, str, str]:
        """
        Execute a validated command and wait for it to finish.

        Args:
            command_type: Type of command to execute
            args: Command arguments
            timeout: Seconds before the command is killed (default: executor timeout)

        Returns:
            Tuple of (success, stdout, stderr)
        """
        full_command = self.build_command(command_type, args)
        command_str = self._log_command(full_command)

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return True, "DRY RUN", ""

        try:
            result = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {command_str}")
            return False, "", "Command timed out"
        except OSError as e:
            logger.error(f"Error executing command {command_str}: {e}")
            return False, "", str(e)

        success = result.returncode == 0
        if success:
            logger.info(f"Command executed successfully: {command_str}")
        else:
            logger.error(f"Command failed with return code {result.returncode}: {command_str}")
            logger.error(f"Error output: {result.stderr}")

        return success, result.stdout, result.stderr

    def spawn(self, command_type: CommandType, args: List[str]):
        """
        Start a validated command in the background with merged output.

        The child runs in its own session so the whole process group can be
        signalled on cancellation.

        Returns:
            subprocess.Popen (or DryRunProcess in dry-run mode)

        Raises:
            OSError: If the binary cannot be started
        """
        full_command = self.build_command(command_type, args)
        self._log_command(full_command)

        if self.dry_run:
            logger.info("DRY RUN: Process would be spawned")
            return DryRunProcess()

        return subprocess.Popen(
            full_command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            start_new_session=True
        )

    def execute_snapraid_command(self,
                                 operation: str,
                                 config_path: Optional[str] = None,
                                 additional_args: Optional[List[str]] = None,
                                 timeout: Optional[int] = None) -> Tuple[bool, str, str]:
        """
        Execute a SnapRAID command safely.

        Args:
            operation: SnapRAID operation (status, sync, scrub, etc.)
            config_path: Path to SnapRAID configuration file
            additional_args: Additional arguments for the command
            timeout: Optional timeout override

        Returns:
            Tuple of (success, stdout, stderr)
        """
        return self.run(CommandType.SNAPRAID, self.snapraid_args(operation, config_path, additional_args),
                        timeout=timeout)

    def snapraid_args(self,
                      operation: str,
                      config_path: Optional[str] = None,
                      additional_args: Optional[List[str]] = None) -> List[str]:
        cmd_args = [operation]
        if config_path:
            if not self._validate_file_path(config_path):
                raise ValueError(f"Invalid config path: {config_path}")
            cmd_args.extend(['-c', config_path])
        if additional_args:
            cmd_args.extend(additional_args)
        return cmd_args

    def _log_command(self, full_command: List[str]) -> str:
        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}")
        return command_str

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against allowed patterns.

        Raises:
            ValueError: If any argument is not allowed
        """
        allowed_args = self.ALLOWED_COMMANDS[command_type]['allowed_args']

        for arg in args:
            if arg in allowed_args:
                continue
            if arg.startswith('-'):
                raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")
            if '..' in arg or not self.SAFE_ARG_PATTERN.match(arg):
                raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

    def _validate_file_path(self, path: str) -> bool:
        """Validate file path format."""
        return bool(self.FILE_PATH_PATTERN.match(path)) and '..' not in path

