"""Core module initialization."""

from .config_manager import ConfigManager, LocalBusConfig
from .logging_config import setup_logging

__all__ = [
    "ConfigManager",
    "LocalBusConfig",
    "setup_logging",
]
