"""Configuration package for the Payme merchant API."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
