"""
JigsawBridge Settings Package

Service endpoints, model names and generation defaults with JSON persistence.
"""

from .settings_manager import SettingsManager, ENV_OVERRIDES

__all__ = ["SettingsManager", "ENV_OVERRIDES"]
