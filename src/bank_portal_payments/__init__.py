"""Batch submission of checks and transfers through a corporate bank portal."""

__version__ = "0.1.0"
