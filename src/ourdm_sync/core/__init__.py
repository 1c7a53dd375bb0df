# src/ourdm_sync/core/__init__.py
"""Configuration and process-level helpers."""
