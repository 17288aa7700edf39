"""Scheduled dashboard screenshots with change fingerprints."""

__version__ = "0.4.0"
