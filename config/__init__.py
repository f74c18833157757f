"""Configuration package for the photo checkout service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
