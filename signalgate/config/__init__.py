"""Configuration management module."""

from signalgate.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
