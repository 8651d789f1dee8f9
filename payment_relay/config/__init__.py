"""Configuration package for the payment relay."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
