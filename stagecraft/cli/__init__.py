"""This module provides an entrypoint to the stagecraft cli."""

from .main import cli, main  # noqa: F401
