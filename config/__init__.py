"""
Configuration module for the chromatrial colour discrimination server.
"""

from .settings import get_config, config, reload_config

__all__ = ["get_config", "config", "reload_config"]
