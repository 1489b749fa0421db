"""Moment Studio: turns highlighted moments into generated media sequences."""

__version__ = "0.1.0"
