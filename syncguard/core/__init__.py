"""
Core Module

Configuration, logging setup and the timeout guard shared by all components.
"""

from .config import Settings, get_settings
from .timeout import TimeoutGuard, run_with_timeout

__all__ = ["Settings", "get_settings", "TimeoutGuard", "run_with_timeout"]
