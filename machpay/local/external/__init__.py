"""
This module initializes the gateway installation system.
It exposes the `GatewayInstaller` and the release registry types it consumes.
"""

from .installer import GatewayInstaller, InstallResult
from .registry import Asset, Release, ReleaseRegistry

__all__ = ["GatewayInstaller", "InstallResult", "Asset", "Release", "ReleaseRegistry"]
