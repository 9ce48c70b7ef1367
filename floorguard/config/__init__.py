"""
Configuration package.

This package contains configuration loading and validation.
"""

from floorguard.config.config import Settings
from floorguard.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
]
