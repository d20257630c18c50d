"""Test doubles for spawned processes and storage settings."""

import io
import queue
import time

from nas_pool.config_manager import StorageSettings


class FakeProcess:
    """Finished process with canned merged output."""

    def __init__(self, lines=None, returncode=0, pid=0):
        self.stdout = io.StringIO("".join(lines or []))
        self.returncode = returncode
        self.pid = pid

    def wait(self, timeout=None):
        return self.returncode


class _QueueStream:
    def __init__(self):
        self._lines = queue.Queue()

    def put(self, line):
        self._lines.put(line)

    def readline(self):
        return self._lines.get(timeout=5)


class ControlledProcess:
    """Process whose output and exit are driven by the test."""

    def __init__(self, pid=0):
        self.stdout = _QueueStream()
        self.returncode = None
        self.pid = pid

    def emit(self, line):
        self.stdout.put(line)

    def exit(self, returncode=0):
        self.returncode = returncode
        self.stdout.put("")

    def wait(self, timeout=None):
        return self.returncode


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_settings(base_dir, **overrides):
    """StorageSettings with every writable path under base_dir."""
    values = dict(
        snapraid_config_path=f"{base_dir}/snapraid.conf",
        fstab_path=f"{base_dir}/fstab",
        samba_config_path=f"{base_dir}/smb.conf",
        nonraid_dat_path=f"{base_dir}/nonraid.dat",
        data_file_path=f"{base_dir}/data.json",
        backend_config_path=f"{base_dir}/storage-backend.conf",
        sync_log_path=f"{base_dir}/snapraid-sync.log",
        audit_log_path=f"{base_dir}/audit.log",
        partprobe_settle_seconds=0,
    )
    values.update(overrides)
    return StorageSettings(**values)
