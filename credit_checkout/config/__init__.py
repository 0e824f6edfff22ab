"""Configuration package for the checkout service."""
from .settings import CreditPackage, Settings, get_settings

__all__ = ["CreditPackage", "Settings", "get_settings"]
