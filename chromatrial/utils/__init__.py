"""
Utility functions for chromatrial.
"""

from .helpers import (
    ensure_directory,
    save_json,
    get_timestamp,
    short_token,
)

__all__ = [
    "ensure_directory",
    "save_json",
    "get_timestamp",
    "short_token",
]
