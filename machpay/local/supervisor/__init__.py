"""
The Supervisor package.
Manages the lifecycle of the gateway process.

This package contains the central ProcessManager class and its helper modules,
which together handle starting, stopping, health-checking and log access for
the gateway binary.
"""
from .supervisor import ProcessManager

__all__ = ['ProcessManager']
