"""Core configuration and utilities.

This package contains core functionality including:
- Configuration management (config.py)
- Logging setup (logging.py)
- Exception base (exceptions.py)
"""

from canvasflow.core.config import Settings, get_settings, settings
from canvasflow.core.exceptions import CanvasflowError
from canvasflow.core.logging import get_logger, setup_logging

__all__ = [
    "CanvasflowError",
    "Settings",
    "get_logger",
    "get_settings",
    "settings",
    "setup_logging",
]
