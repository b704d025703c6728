"""Persistence, totals and mutation primitives for offline invoice sync."""

__version__ = "0.1.0"
