"""
API Package.

Exports the FastAPI application.
"""

from .server import app, start_server

__all__ = ["app", "start_server"]
