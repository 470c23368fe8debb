"""
Docgen Core Module
==================
Shared utilities and infrastructure.
"""

from .config import Settings, get_settings, reload_settings
from .logger import logger, setup_logger, configure_from_settings, get_logger

__all__ = ["Settings", "get_settings", "reload_settings", "logger", "setup_logger", "configure_from_settings", "get_logger"]
