"""
Configuration package
"""

from .settings import settings, Settings
from .logging_config import setup_logging, RequestIdFilter

__all__ = [
    "settings",
    "Settings",
    "setup_logging",
    "RequestIdFilter",
]
