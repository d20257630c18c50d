"""Durable JSON state for the storage pool."""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from .errors import ConfigurationError
from .models import PoolConfiguration


logger = logging.getLogger(__name__)


INITIAL_STATE: Dict[str, Any] = {
    "storageConfig": [],
    "poolConfigured": False,
}


class StateStore:
    """Reads and writes the persisted pool configuration document."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Dict[str, Any]:
        """
        Read the whole state document.

        A missing or unreadable file yields a copy of the initial state so
        callers never see a half-parsed document.
        """
        if not os.path.exists(self.path):
            return copy.deepcopy(INITIAL_STATE)
        try:
            with open(self.path, "r") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Error reading state file {self.path}: {exc}")
            return copy.deepcopy(INITIAL_STATE)
        if not isinstance(data, dict):
            logger.error(f"State file {self.path} is not a JSON object, ignoring it")
            return copy.deepcopy(INITIAL_STATE)
        for key, value in INITIAL_STATE.items():
            data.setdefault(key, copy.deepcopy(value))
        return data

    def save(self, data: Dict[str, Any]) -> None:
        """
        Atomically replace the state document.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        temp_path = f"{self.path}.tmp"
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w") as handle:
                json.dump(data, handle, indent=2)
            os.replace(temp_path, self.path)
        except OSError as exc:
            logger.error(f"Error saving state file {self.path}: {exc}")
            raise ConfigurationError(f"Failed to save configuration: {exc}") from exc

    def get_pool_configuration(self) -> PoolConfiguration:
        return PoolConfiguration.from_dict(self.load())

    def save_pool_configuration(self, pool: PoolConfiguration) -> None:
        """Persist the pool layout, keeping unrelated keys intact."""
        data = self.load()
        data.update(pool.to_dict())
        self.save(data)
        logger.info(
            f"Saved pool configuration: {len(pool.disks)} disks, configured={pool.configured}"
        )
