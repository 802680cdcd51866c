"""
Logging module for procwarden.
This module provides functionality to set up the supervisor's own logging
and to tail app log files from the console.
"""

from .setup import setup_logging
from .tail import read_last_lines, follow_files

__all__ = ["setup_logging", "read_last_lines", "follow_files"]
