"""Visa appointment slot monitor."""

__version__ = "0.1.0"
