"""
The Supervisor package.
Manages the lifecycle of the apps declared in an ecosystem file.

This package contains the central ProcessManager class and its helper modules,
which together handle launching, restarting, monitoring, logging and stopping
every app instance.
"""
from .supervisor import ProcessManager

__all__ = ['ProcessManager']
