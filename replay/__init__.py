"""Recorded browser flow replay."""

__version__ = "0.1.0"
