"""HTTP API"""

from .app import create_app, build_controller

__all__ = ["create_app", "build_controller"]
