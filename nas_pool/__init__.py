"""
Storage pool orchestration for a small NAS.
Configures SnapRAID + MergerFS parity pools and NonRAID kernel arrays.
"""
from typing import Optional

from nas_pool.config_manager import ConfigManager
from nas_pool.logging import init_logging
from nas_pool.pool_service import PoolService

__version__ = "1.0.0"


def create_pool_service(config_file_path: Optional[str] = None) -> PoolService:
    """Load settings, set up JSON logging and build a PoolService."""
    settings = ConfigManager(config_file_path).load_config()
    init_logging(settings.log_level.upper())
    return PoolService(settings)
