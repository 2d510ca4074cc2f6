"""Configuration package for the GridPlay engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
