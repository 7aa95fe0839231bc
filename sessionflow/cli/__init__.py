"""Command-line tools for inspecting session streams."""

from .main import app

__all__ = ["app"]
