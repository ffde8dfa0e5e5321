"""Durable job queue for automated insurance form submission."""

__version__ = "0.1.0"
