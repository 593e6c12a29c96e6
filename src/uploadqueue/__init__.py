"""Durable, offline-tolerant upload queue."""

__version__ = "0.1.0"
