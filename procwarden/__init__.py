"""
procwarden: a small process manager driven by ecosystem files.
"""

__version__ = "0.1.0"
