"""Database session helpers for the local durable store."""

from .session import SessionLocal, create_tables

__all__ = ["SessionLocal", "create_tables"]
