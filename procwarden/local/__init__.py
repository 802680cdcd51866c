"""
Local package for procwarden.

This package provides process-wide configuration and variables through the
app_globals module.
"""

from .global_config import app_globals

__all__ = ["app_globals"]
