"""Shared utilities."""

from .config import Settings, get_settings
from .clock import Clock, utcnow

__all__ = [
    "Settings",
    "get_settings",
    "Clock",
    "utcnow",
]
