"""Futures calendar-spread gap monitor."""

__version__ = "0.1.0"
