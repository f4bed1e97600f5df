"""Cira - offline-first sync engine for a photo and voice journal."""

__version__ = "0.3.0"
