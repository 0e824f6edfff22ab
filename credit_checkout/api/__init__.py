"""HTTP API for credit checkout."""
from .main import create_app

__all__ = ["create_app"]
