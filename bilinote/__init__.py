"""Bilibili subtitle extraction and study-note generation service."""

__version__ = "0.3.0"
