"""HTTP surface for CyberKey."""

from .app import create_app

__all__ = ["create_app"]
