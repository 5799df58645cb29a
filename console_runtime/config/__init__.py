"""Configuration primitives for the console runtime."""

from .settings import RuntimeSettings, get_settings

__all__ = ["RuntimeSettings", "get_settings"]
