"""HTTP API server for gh-pm."""

from .api import create_app

__all__ = ["create_app"]
