"""Venue check-in admission, crowd levels and reward progression."""

__version__ = "1.0.0"
