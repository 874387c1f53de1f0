"""
Configuration package.

This package contains configuration loading and validation.
"""

from pmm_settlement.config.config import Settings
from pmm_settlement.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
]
