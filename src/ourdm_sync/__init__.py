"""Offline-first message synchronization and delivery tracking for Ourdm clients."""

__version__ = "0.1.0"
