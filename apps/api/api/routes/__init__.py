"""API routes module."""

from . import health, library

__all__ = ["health", "library"]
