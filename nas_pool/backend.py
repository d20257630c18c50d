"""Resolve which storage backend is active."""

import logging
import os
import re
from typing import Optional

from .errors import BackendMismatchError
from .models import StorageBackend


logger = logging.getLogger(__name__)

DEFAULT_BACKEND = StorageBackend.PARITY_POOL
BACKEND_ENV_VAR = "STORAGE_BACKEND"
BACKEND_LINE_PATTERN = re.compile(r"^\s*STORAGE_BACKEND\s*=\s*['\"]?(\w+)['\"]?\s*$", re.MULTILINE)


class BackendSelector:
    """
    Read-only view of the persisted backend selection.

    The key=value file is written by the installer; the STORAGE_BACKEND
    environment variable overrides it. Switching backends is an
    administrative action and has no setter here.
    """

    def __init__(self, config_path: str, default: StorageBackend = DEFAULT_BACKEND):
        self.config_path = config_path
        self.default = default

    def get_backend(self) -> StorageBackend:
        """Resolve the active backend for the current request."""
        raw = os.getenv(BACKEND_ENV_VAR) or self._read_config_value()
        if not raw:
            return self.default
        try:
            return StorageBackend.parse(raw)
        except ValueError:
            logger.warning(f"Unknown storage backend '{raw}', using {self.default.value}")
            return self.default

    def require(self, expected: StorageBackend) -> StorageBackend:
        """
        Ensure the expected backend is active.

        Raises:
            BackendMismatchError: If another backend is active
        """
        active = self.get_backend()
        if active != expected:
            raise BackendMismatchError(expected.value, active.value)
        return active

    def _read_config_value(self) -> Optional[str]:
        if not os.path.exists(self.config_path):
            return None
        try:
            with open(self.config_path, "r") as handle:
                content = handle.read()
        except OSError as exc:
            logger.warning(f"Cannot read backend config {self.config_path}: {exc}")
            return None
        match = BACKEND_LINE_PATTERN.search(content)
        return match.group(1) if match else None
