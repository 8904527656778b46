"""Configuration package for CryptoPulse."""

from .settings import Settings, load_settings, reset_settings

__all__ = ["Settings", "load_settings", "reset_settings"]
