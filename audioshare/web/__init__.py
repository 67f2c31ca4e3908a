"""HTTP layer for Audio Share."""

from .server import create_app

__all__ = ["create_app"]
